import os
from typing import Optional

# ========= Static config =========
BUFFER_SIZE = 32768
POLL_INTERVAL = 0.1
LISTEN_BACKLOG = 100
BANNER_TIMEOUT = 30

DEFAULT_SHELL = ["sh"]
FAILURE_EXIT_CODE = 1

DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 2222
HOST_KEY_BITS = 2048

READ_SPOOL_PREFIX = "sftp-read-"

# One "key: value" line per field, parsed by podsshd.attrs.parse_stat.
STAT_FORMAT = "name: %n\nmode: %f\nsize: %s\nmod: %Y\ntype: %F\n"


def default_kubeconfig() -> Optional[str]:
    path = os.path.join(os.path.expanduser("~"), ".kube", "config")
    if os.path.isfile(path):
        return path
    return None


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.KUBECONFIG: Optional[str] = default_kubeconfig()
        self.NAMESPACE: Optional[str] = None
        self.POD: Optional[str] = None
        self.CONTAINER: Optional[str] = None
        self.LISTEN_HOST: str = DEFAULT_LISTEN_HOST
        self.LISTEN_PORT: int = DEFAULT_LISTEN_PORT
        self.HOST_KEY_PATH: Optional[str] = None
        self.DEBUG: bool = False

    def load_from_env(self):
        self.KUBECONFIG = os.environ.get("KUBECONFIG", self.KUBECONFIG)
        self.NAMESPACE = os.environ.get("POD_SSHD_NAMESPACE", self.NAMESPACE)
        self.POD = os.environ.get("POD_SSHD_POD", self.POD)
        self.CONTAINER = os.environ.get("POD_SSHD_CONTAINER", self.CONTAINER)
        self.LISTEN_HOST = os.environ.get("POD_SSHD_HOST", self.LISTEN_HOST)
        self.LISTEN_PORT = int(os.environ.get("POD_SSHD_PORT", self.LISTEN_PORT))
        self.HOST_KEY_PATH = os.environ.get("POD_SSHD_HOST_KEY", self.HOST_KEY_PATH)

        debug_env = os.environ.get("POD_SSHD_DEBUG")
        if debug_env is not None:
            self.DEBUG = debug_env.lower() in ("true", "1", "yes")

# Global instance
config = ServerConfig()

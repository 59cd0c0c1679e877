import argparse

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from podsshd.config import config
from podsshd.remote import KubernetesExecTransport, RemoteCommandChannel
from podsshd.server import load_host_key, serve_forever
from podsshd.utils import log_error


def build_core_api(kubeconfig):
    """CoreV1Api from the given kubeconfig, or the in-cluster service account."""
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
    else:
        try:
            k8s_config.load_incluster_config()
        except ConfigException:
            k8s_config.load_kube_config()
    return k8s_client.CoreV1Api()


def main() -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="SSH and SFTP access to one container of a Kubernetes pod"
    )
    parser.add_argument("--kubeconfig", help="Path to the kubeconfig file (overrides KUBECONFIG env)")
    parser.add_argument("-n", "--namespace", help="Pod namespace (overrides POD_SSHD_NAMESPACE env)")
    parser.add_argument("-p", "--pod", help="Pod name (overrides POD_SSHD_POD env)")
    parser.add_argument("-c", "--container", help="Fixed container; by default the SSH user name selects it")
    parser.add_argument("--host", help="Listen address (overrides POD_SSHD_HOST env)")
    parser.add_argument("--port", type=int, help="Listen port (overrides POD_SSHD_PORT env)")
    parser.add_argument("--host-key", help="Path to the SSH host private key (overrides POD_SSHD_HOST_KEY env)")
    parser.add_argument("--debug", action="store_true", help="Log every remote command")

    args = parser.parse_args()

    # Apply args over env vars
    if args.kubeconfig: config.KUBECONFIG = args.kubeconfig
    if args.namespace: config.NAMESPACE = args.namespace
    if args.pod: config.POD = args.pod
    if args.container: config.CONTAINER = args.container
    if args.host: config.LISTEN_HOST = args.host
    if args.port: config.LISTEN_PORT = args.port
    if args.host_key: config.HOST_KEY_PATH = args.host_key
    if args.debug: config.DEBUG = True

    # Validation
    if not config.NAMESPACE:
        parser.error("namespace is required (via -n or POD_SSHD_NAMESPACE env)")
    if not config.POD:
        parser.error("pod is required (via -p or POD_SSHD_POD env)")

    runner = RemoteCommandChannel(KubernetesExecTransport(build_core_api(config.KUBECONFIG)))
    host_key = load_host_key(config.HOST_KEY_PATH)

    log_error(
        f"serving pod {config.NAMESPACE}/{config.POD} "
        f"container={config.CONTAINER or '<ssh user>'} kubeconfig={config.KUBECONFIG or '<in-cluster>'}"
    )
    try:
        serve_forever(config, runner, host_key)
    except KeyboardInterrupt:
        log_error("shutting down...")

if __name__ == "__main__":
    main()

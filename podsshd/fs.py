import errno
import io
import os
import posixpath
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from podsshd.attrs import FileAttributes, parse_stat
from podsshd.config import READ_SPOOL_PREFIX, STAT_FORMAT
from podsshd.context import RequestContext
from podsshd.remote import RemoteCommandChannel, RemoteExitError, TargetIdentity
from podsshd.utils import log_debug


class UnsupportedOperation(Exception):
    """The file-transfer request has no remote command mapping."""


@dataclass(frozen=True)
class OpenFlags:
    read: bool = False
    write: bool = False
    append: bool = False
    create: bool = False
    truncate: bool = False
    exclusive: bool = False

    @classmethod
    def from_os_flags(cls, flags: int) -> "OpenFlags":
        access = flags & (os.O_RDONLY | os.O_WRONLY | os.O_RDWR)
        return cls(
            read=access in (os.O_RDONLY, os.O_RDWR),
            write=access in (os.O_WRONLY, os.O_RDWR),
            append=bool(flags & os.O_APPEND),
            create=bool(flags & os.O_CREAT),
            truncate=bool(flags & os.O_TRUNC),
            exclusive=bool(flags & os.O_EXCL),
        )


@dataclass(frozen=True)
class SetAttributes:
    """Attributes a Setstat request asks to change; ``None`` means not requested."""

    size: Optional[int] = None
    mtime: Optional[int] = None
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None


@dataclass
class FileRequest:
    method: str
    path: str
    context: RequestContext = field(default_factory=RequestContext)
    flags: OpenFlags = field(default_factory=OpenFlags)
    attrs: SetAttributes = field(default_factory=SetAttributes)


class SpooledReader:
    """Local, request-scoped copy of a remote file.

    The temporary file is created before any remote command runs and is
    released on the earliest of ``release()`` and cancellation of the
    owning context.
    """

    def __init__(self, context: RequestContext, directory: Optional[str] = None):
        self._lock = threading.Lock()
        self._unregister = lambda: None
        self._file = tempfile.TemporaryFile(prefix=READ_SPOOL_PREFIX, dir=directory)
        self._unregister = context.on_cancel(self.release)

    @property
    def released(self) -> bool:
        return self._file is None

    def write(self, data: bytes) -> int:
        with self._lock:
            if self._file is None:
                return 0
            self._file.seek(0, io.SEEK_END)
            return self._file.write(data)

    def read_at(self, offset: int, length: int) -> bytes:
        with self._lock:
            if self._file is None:
                raise OSError(errno.EBADF, "read buffer released")
            self._file.seek(offset)
            return self._file.read(length)

    @property
    def size(self) -> int:
        with self._lock:
            if self._file is None:
                raise OSError(errno.EBADF, "read buffer released")
            return self._file.seek(0, io.SEEK_END)

    def release(self) -> None:
        with self._lock:
            spool, self._file = self._file, None
        if spool is not None:
            spool.close()
            self._unregister()


class AppendWriter:
    """Appends each chunk to the end of the remote file; offsets are ignored."""

    def __init__(self, fs: "RemoteFileSystem", context: RequestContext, path: str):
        self.fs = fs
        self.context = context
        self.path = path

    def write_at(self, data: bytes, offset: int) -> int:
        command = ["dd", "bs=1", "conv=nocreat", "oflag=append", f"of={self.path}"]
        self.fs.run("write", self.context, command, stdin=io.BytesIO(data))
        return len(data)


class PositionalWriter:
    """Writes each chunk at the requested offset of the remote file."""

    def __init__(self, fs: "RemoteFileSystem", context: RequestContext, path: str):
        self.fs = fs
        self.context = context
        self.path = path

    def write_at(self, data: bytes, offset: int) -> int:
        command = ["dd", "bs=1", f"seek={offset}", "conv=nocreat", f"of={self.path}"]
        self.fs.run("write", self.context, command, stdin=io.BytesIO(data))
        return len(data)


class SingleEntryLister:
    def __init__(self, entry: FileAttributes):
        self.entry = entry

    def __len__(self) -> int:
        return 1

    def list_at(self, offset: int, count: int) -> List[FileAttributes]:
        if offset > 0 or count <= 0:
            return []
        return [self.entry]


class DirectoryLister:
    """Directory entries whose attributes are resolved one page at a time."""

    def __init__(self, fs: "RemoteFileSystem", context: RequestContext, directory: str, names: Sequence[str]):
        self.fs = fs
        self.context = context
        self.directory = directory
        self.names = list(names)

    def __len__(self) -> int:
        return len(self.names)

    def list_at(self, offset: int, count: int) -> List[FileAttributes]:
        page = self.names[offset:offset + max(count, 0)]
        return [self.fs.stat(self.context, posixpath.join(self.directory, name)) for name in page]


class RemoteFileSystem:
    """File-transfer request handler backed only by remote command execution.

    The four capability roles are ``file_read``, ``file_write``,
    ``file_cmd`` and ``file_list``; ``stat`` serves single-entry lookups.
    Each remote command is one exec round trip and nothing is cached.
    """

    def __init__(self, runner: RemoteCommandChannel, target: TargetIdentity, spool_dir: Optional[str] = None):
        self.runner = runner
        self.target = target
        self.spool_dir = spool_dir

    def run(self, operation: str, context: RequestContext, command: List[str], stdin: Any = None, stdout: Any = None) -> None:
        try:
            self.runner.execute(self.target, command, stdin=stdin, stdout=stdout, context=context)
        except RemoteExitError as exc:
            raise exc.for_operation(operation) from exc

    def file_read(self, request: FileRequest) -> SpooledReader:
        log_debug(f"read {request.path}")
        reader = SpooledReader(request.context, self.spool_dir)
        try:
            self.run("read", request.context, ["cat", request.path], stdout=reader)
        except BaseException:
            reader.release()
            raise
        return reader

    def file_write(self, request: FileRequest):
        log_debug(f"write {request.path} {request.flags}")
        flags = request.flags
        path = request.path
        if flags.truncate and flags.create:
            self.run("truncate", request.context, ["truncate", path])
        elif flags.truncate:
            self.run("truncate", request.context, ["truncate", "-c", path])
        elif flags.create:
            self.run("create", request.context, ["touch", path])

        if flags.append:
            return AppendWriter(self, request.context, path)
        return PositionalWriter(self, request.context, path)

    def file_cmd(self, request: FileRequest) -> None:
        log_debug(f"{request.method} {request.path}")
        if request.method == "Setstat":
            self._setstat(request)
        elif request.method == "Mkdir":
            self.run("mkdir", request.context, ["mkdir", request.path])
        else:
            raise UnsupportedOperation(f"unsupported {request.method}")

    def _setstat(self, request: FileRequest) -> None:
        # Steps apply in order and stop at the first failure.
        attrs = request.attrs
        path = request.path
        context = request.context
        if attrs.size is not None:
            self.run("setstat", context, ["truncate", "-c", "-s", str(attrs.size), path])
        if attrs.mtime is not None:
            stamp = time.strftime("%Y%m%d%H%M.%S", time.localtime(attrs.mtime))
            self.run("setstat", context, ["touch", "-c", "-m", "-t", stamp, path])
        if attrs.mode is not None:
            self.run("setstat", context, ["chmod", format(attrs.mode & 0o7777, "o"), path])
        if attrs.uid is not None and attrs.gid is not None:
            self.run("setstat", context, ["chown", f"{attrs.uid}:{attrs.gid}", path])

    def file_list(self, request: FileRequest):
        log_debug(f"list {request.path}")
        entry = self.stat(request.context, request.path)
        if not entry.is_dir:
            return SingleEntryLister(entry)

        output = io.BytesIO()
        self.run("list", request.context, ["ls", "-1", request.path], stdout=output)
        text = output.getvalue().decode("utf-8", errors="replace")
        names = [line for line in text.split("\n") if line]
        return DirectoryLister(self, request.context, request.path, names)

    def stat(self, context: RequestContext, path: str) -> FileAttributes:
        output = io.BytesIO()
        self.run("stat", context, ["stat", "-c", STAT_FORMAT, path], stdout=output)
        return parse_stat(output.getvalue())

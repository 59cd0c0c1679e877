import posixpath
from typing import Any, Optional

import paramiko
from paramiko.sftp import SFTP_FAILURE, SFTP_OK, SFTP_OP_UNSUPPORTED

from podsshd.attrs import FileAttributes
from podsshd.context import RequestContext
from podsshd.fs import (
    FileRequest, OpenFlags, RemoteFileSystem, SetAttributes, UnsupportedOperation
)
from podsshd.utils import log_error


def to_sftp_attributes(entry: FileAttributes) -> paramiko.SFTPAttributes:
    attr = paramiko.SFTPAttributes()
    attr.filename = entry.name
    attr.st_size = entry.size
    attr.st_mode = entry.mode
    attr.st_mtime = entry.mtime
    attr.st_atime = entry.mtime
    return attr


def set_attributes(attr: paramiko.SFTPAttributes) -> SetAttributes:
    # paramiko leaves every field the client did not send as None.
    return SetAttributes(
        size=attr.st_size,
        mtime=attr.st_mtime,
        mode=attr.st_mode,
        uid=attr.st_uid,
        gid=attr.st_gid,
    )


def error_code(operation: str, path: str, exc: Exception) -> int:
    log_error(f"sftp {operation} {path}: {exc}")
    if isinstance(exc, UnsupportedOperation):
        return SFTP_OP_UNSUPPORTED
    if isinstance(exc, OSError) and exc.errno is not None:
        return paramiko.SFTPServer.convert_errno(exc.errno)
    return SFTP_FAILURE


class LazyListing(list):
    """Directory listing handed to paramiko.

    paramiko pages through a listing by slicing it 16 entries at a time and
    iterating each slice. Slicing here only narrows the range of names;
    attributes are fetched when a page is iterated.
    """

    def __init__(self, lister, start: int = 0, stop: Optional[int] = None):
        super().__init__()
        self.lister = lister
        self.start = start
        self.stop = len(lister) if stop is None else stop

    def __len__(self) -> int:
        return max(self.stop - self.start, 0)

    def __bool__(self) -> bool:
        return len(self) > 0

    def __getitem__(self, key):
        if not isinstance(key, slice):
            if key < 0:
                key += len(self)
            if key < 0 or key >= len(self):
                raise IndexError("listing index out of range")
            return to_sftp_attributes(self.lister.list_at(self.start + key, 1)[0])
        start, stop, step = key.indices(len(self))
        if step != 1:
            raise ValueError("listing slices must be contiguous")
        return LazyListing(self.lister, self.start + start, self.start + max(stop, start))

    def __iter__(self):
        for entry in self.lister.list_at(self.start, len(self)):
            yield to_sftp_attributes(entry)


class RemoteSFTPHandle(paramiko.SFTPHandle):
    def __init__(self, fs: RemoteFileSystem, request: FileRequest, reader=None, writer=None, flags: int = 0):
        super().__init__(flags)
        self.fs = fs
        self.request = request
        self.reader = reader
        self.writer = writer

    def read(self, offset, length):
        if self.reader is None:
            return SFTP_OP_UNSUPPORTED
        try:
            return self.reader.read_at(offset, length)
        except Exception as exc:
            return error_code("read", self.request.path, exc)

    def write(self, offset, data):
        if self.writer is None:
            return SFTP_OP_UNSUPPORTED
        try:
            self.writer.write_at(data, offset)
        except Exception as exc:
            return error_code("write", self.request.path, exc)
        return SFTP_OK

    def stat(self):
        try:
            return to_sftp_attributes(self.fs.stat(self.request.context, self.request.path))
        except Exception as exc:
            return error_code("fstat", self.request.path, exc)

    def chattr(self, attr):
        request = FileRequest(
            "Setstat", self.request.path, context=self.request.context, attrs=set_attributes(attr)
        )
        try:
            self.fs.file_cmd(request)
        except Exception as exc:
            return error_code("fsetstat", self.request.path, exc)
        return SFTP_OK

    def close(self):
        # Releases the read spool and stops any command still bound to the handle.
        self.request.context.cancel()


class RemoteSFTPServer(paramiko.SFTPServerInterface):
    """SFTP subsystem for one SSH session, served through remote commands."""

    def __init__(self, server, runner, *args, **kwargs):
        super().__init__(server, *args, **kwargs)
        self.context: RequestContext = server.context.child()
        self.fs = RemoteFileSystem(runner, server.target)

    def session_ended(self):
        self.context.cancel()

    def canonicalize(self, path):
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        return posixpath.normpath(posixpath.join("/", path or "/"))

    def open(self, path, flags, attr):
        path = self.canonicalize(path)
        open_flags = OpenFlags.from_os_flags(flags)
        request = FileRequest("Open", path, context=self.context.child(), flags=open_flags)
        try:
            if open_flags.write:
                writer = self.fs.file_write(request)
                return RemoteSFTPHandle(self.fs, request, writer=writer, flags=flags)
            reader = self.fs.file_read(request)
            return RemoteSFTPHandle(self.fs, request, reader=reader, flags=flags)
        except Exception as exc:
            request.context.cancel()
            return error_code("open", path, exc)

    def list_folder(self, path):
        path = self.canonicalize(path)
        # The listing resolves pages lazily, so it lives as long as the session.
        request = FileRequest("List", path, context=self.context)
        try:
            return LazyListing(self.fs.file_list(request))
        except Exception as exc:
            return error_code("list", path, exc)

    def stat(self, path):
        path = self.canonicalize(path)
        with self.context.child() as context:
            try:
                return to_sftp_attributes(self.fs.stat(context, path))
            except Exception as exc:
                return error_code("stat", path, exc)

    def lstat(self, path):
        return self.stat(path)

    def mkdir(self, path, attr):
        return self._command("Mkdir", path)

    def chattr(self, path, attr):
        return self._command("Setstat", path, set_attributes(attr))

    def _command(self, method: str, path: Any, attrs: Optional[SetAttributes] = None) -> int:
        path = self.canonicalize(path)
        with self.context.child() as context:
            request = FileRequest(method, path, context=context, attrs=attrs or SetAttributes())
            try:
                self.fs.file_cmd(request)
            except Exception as exc:
                return error_code(method.lower(), path, exc)
        return SFTP_OK

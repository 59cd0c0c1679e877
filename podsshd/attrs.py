"""
Stat output decoding.

``stat -c STAT_FORMAT`` prints one ``key: value`` line per field; the mode
is the raw st_mode word in hex. The mode is normalised into the POSIX
layout SFTP clients read from the wire: permission bits, exactly one file
type, and the set-user-id / set-group-id / sticky flags.
"""

import posixpath
import stat
from dataclasses import dataclass
from enum import Enum
from typing import Dict


class StatDecodeError(ValueError):
    """Remote stat output did not match the expected fields."""


class FileType(Enum):
    BLOCK_DEVICE = stat.S_IFBLK
    CHAR_DEVICE = stat.S_IFCHR
    DIRECTORY = stat.S_IFDIR
    NAMED_PIPE = stat.S_IFIFO
    SYMLINK = stat.S_IFLNK
    REGULAR = stat.S_IFREG
    SOCKET = stat.S_IFSOCK


_TYPES_BY_BITS: Dict[int, FileType] = {file_type.value: file_type for file_type in FileType}

_SPECIAL_BITS = (stat.S_ISGID, stat.S_ISUID, stat.S_ISVTX)


def file_type(mode: int) -> FileType:
    # Unknown type encodings are reported as regular files.
    return _TYPES_BY_BITS.get(stat.S_IFMT(mode), FileType.REGULAR)


def portable_mode(raw_mode: int) -> int:
    raw_mode &= 0xFFFFFFFF
    mode = raw_mode & 0o777
    mode |= file_type(raw_mode).value
    for bit in _SPECIAL_BITS:
        if raw_mode & bit:
            mode |= bit
    return mode


@dataclass(frozen=True)
class FileAttributes:
    name: str
    size: int
    mode: int
    mtime: int
    is_dir: bool

    @property
    def file_type(self) -> FileType:
        return file_type(self.mode)

    @property
    def permissions(self) -> int:
        return stat.S_IMODE(self.mode)


_REQUIRED_KEYS = ("name", "mode", "size", "mod", "type")


def _fields(text: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(": ")
        if not sep:
            continue
        fields.setdefault(key.strip(), value)
    missing = [key for key in _REQUIRED_KEYS if key not in fields]
    if missing:
        raise StatDecodeError(f"stat output missing {', '.join(missing)}: {text!r}")
    return fields


def _parse_int(fields: Dict[str, str], key: str, base: int = 10) -> int:
    raw = fields[key].strip()
    try:
        return int(raw, base)
    except ValueError:
        raise StatDecodeError(f"stat field {key} is not a base-{base} integer: {raw!r}") from None


def decode(raw_mode: int, text: str) -> FileAttributes:
    fields = _fields(text)
    return FileAttributes(
        name=posixpath.basename(fields["name"]) or fields["name"],
        size=_parse_int(fields, "size"),
        mode=portable_mode(raw_mode),
        mtime=_parse_int(fields, "mod"),
        is_dir=fields["type"].strip() == "directory",
    )


def parse_stat(text) -> FileAttributes:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    fields = _fields(text)
    raw_mode = _parse_int(fields, "mode", base=16)
    if raw_mode > 0xFFFFFFFF:
        raise StatDecodeError(f"stat mode out of range: {fields['mode']!r}")
    return decode(raw_mode, text)

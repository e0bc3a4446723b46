"""Header-driven wire protocol of the STACK storage backend.

Several backend endpoints return created ids and tokens in response headers
instead of the body. The helpers here turn a response into a typed value or
raise a fatal error, so callers never guess at missing headers.
"""

import base64
from dataclasses import dataclass

import httpx

from furvino_ingest.core.exceptions import MissingHeaderError, StackHTTPError

SESSION_TOKEN = "x-sessiontoken"
SHARE_TOKEN = "x-sharetoken"
TWO_FACTOR_REQUIRED = "x-2fa-required"
PARENT_ID = "x-parentid"
FILENAME = "x-filename"
FILE_BYTE_SIZE = "x-filebytesize"
CHUNK_BYTE_SIZE = "x-chunkbytesize"
OVERWRITE = "x-overwrite"
UPLOAD_SESSION_ID = "x-sessionid"
START_OFFSET = "x-startoffset"
NODE_ID = "x-id"
FINISHED_NODE_ID = "x-nodeid"
URL_TOKEN = "x-urltoken"
SHARE_ID = "x-shareid"

CONFLICT = 409
NOT_FOUND = 404


@dataclass(frozen=True)
class StackNode:
    """A file or directory node as reported by the backend."""

    id: int
    name: str
    dir: bool

    @classmethod
    def from_json(cls, data: dict) -> "StackNode":
        return cls(id=int(data["id"]), name=str(data["name"]), dir=bool(data.get("dir", False)))


def encode_filename(filename: str) -> str:
    """Filenames travel base64 encoded in the x-filename header."""
    return base64.b64encode(filename.encode("utf-8")).decode("ascii")


def raise_for_status(response: httpx.Response, operation: str) -> None:
    """Raise StackHTTPError carrying status and raw body for non-2xx responses."""
    if response.is_success:
        return
    raise StackHTTPError(operation, response.status_code, response.text)


def require_header(response: httpx.Response, header: str, operation: str) -> str:
    value = response.headers.get(header)
    if not value:
        raise MissingHeaderError(operation, header)
    return value


def require_int_header(response: httpx.Response, header: str, operation: str) -> int:
    value = require_header(response, header, operation)
    try:
        return int(value)
    except ValueError:
        raise MissingHeaderError(operation, header) from None


def optional_int_header(response: httpx.Response, header: str) -> int | None:
    value = response.headers.get(header)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_nodes(response: httpx.Response) -> list[StackNode]:
    return [StackNode.from_json(node) for node in response.json().get("nodes") or []]


MIN_CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_SIZE = 128 * 1024 * 1024


def align_chunk_size(chunk_size: int) -> int:
    """Clamp a chunk size to the backend's 1-128 MiB window, in whole MiB."""
    clamped = max(MIN_CHUNK_SIZE, min(chunk_size, MAX_CHUNK_SIZE))
    return (clamped // MIN_CHUNK_SIZE) * MIN_CHUNK_SIZE


@dataclass(frozen=True)
class SharePermissions:
    """Permission set attached to a node share.

    A share either lets its holder add content (upload-only) or read it
    (public distribution), never both.
    """

    create_file: bool = False
    create_directory: bool = False
    read_file: bool = False
    read_directory: bool = False
    update_file: bool = False
    update_directory: bool = False
    delete_file: bool = False
    delete_directory: bool = False

    def __post_init__(self):
        if self.grants_read and self.grants_write:
            raise ValueError("A share cannot grant both read and write access")

    @property
    def grants_read(self) -> bool:
        return self.read_file or self.read_directory

    @property
    def grants_write(self) -> bool:
        return any(
            (
                self.create_file,
                self.create_directory,
                self.update_file,
                self.update_directory,
                self.delete_file,
                self.delete_directory,
            )
        )

    def to_json(self) -> dict:
        return {
            "createFile": self.create_file,
            "createDirectory": self.create_directory,
            "readFile": self.read_file,
            "readDirectory": self.read_directory,
            "updateFile": self.update_file,
            "updateDirectory": self.update_directory,
            "deleteFile": self.delete_file,
            "deleteDirectory": self.delete_directory,
        }


UPLOAD_ONLY = SharePermissions(create_file=True, create_directory=True)
PUBLIC_READ = SharePermissions(read_file=True, read_directory=True)

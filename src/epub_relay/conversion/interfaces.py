from dataclasses import dataclass
from typing import Protocol


class FetchGateway(Protocol):
    def fetch(self, url: str) -> bytes:
        """Download the resource at `url` and return its body.
        This is a blocking call; callers should offload to threads if needed.
        """


class ConverterGateway(Protocol):
    async def convert(self, input_path: str, output_path: str) -> str:
        """Convert `input_path` into `output_path` and return the output path."""


class StorageGateway(Protocol):
    def store(self, remote_path: str, data: bytes, permissions: int) -> None:
        """Write `data` to `remote_path` on the remote store (blocking)."""


@dataclass(frozen=True)
class JobPaths:
    job_dir: str
    input_path: str
    output_path: str
    remote_path: str

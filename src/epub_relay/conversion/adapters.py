import asyncio
import logging
import os
from pathlib import Path
from urllib.parse import quote

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from .errors import ConversionFailed
from .interfaces import ConverterGateway, FetchGateway, StorageGateway


logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return False


def _retrying(attempts: int, wait: float) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_fixed(wait),
        retry=retry_if_exception(_is_transient),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            "Attempt %d failed (%s), retrying", state.attempt_number, state.outcome.exception()
        ),
    )


class RequestsFetcher(FetchGateway):
    def __init__(
        self,
        *,
        timeout: float = 120.0,
        attempts: int = 3,
        wait: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self._timeout = timeout
        self._attempts = attempts
        self._wait = wait
        self._session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        for attempt in _retrying(self._attempts, self._wait):
            with attempt:
                resp = self._session.get(url, timeout=self._timeout)
                resp.raise_for_status()
                return resp.content
        raise RuntimeError("unreachable")


class WebDAVStorage(StorageGateway):
    """Upload files with a plain WebDAV PUT.

    WebDAV has no notion of POSIX modes, so `permissions` is accepted for
    interface compatibility and otherwise ignored.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        *,
        timeout: float = 120.0,
        attempts: int = 3,
        wait: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = (username, password) if username else None
        self._timeout = timeout
        self._attempts = attempts
        self._wait = wait
        self._session = session or requests.Session()

    def url_for(self, remote_path: str) -> str:
        return self._base_url + "/" + quote(remote_path.lstrip("/"))

    def store(self, remote_path: str, data: bytes, permissions: int = 0o644) -> None:
        url = self.url_for(remote_path)
        for attempt in _retrying(self._attempts, self._wait):
            with attempt:
                resp = self._session.put(url, data=data, auth=self._auth, timeout=self._timeout)
                resp.raise_for_status()
        logger.debug("PUT %s -> %s (%d bytes)", remote_path, url, len(data))


class LocalDirectoryStorage(StorageGateway):
    """Store results in a local directory; used when no WebDAV endpoint is configured."""

    def __init__(self, base_dir: str) -> None:
        self._base = Path(base_dir).resolve()

    def path_for(self, remote_path: str) -> Path:
        target = (self._base / remote_path.lstrip("/")).resolve()
        if self._base not in target.parents:
            raise ValueError(f"remote path escapes storage directory: {remote_path}")
        return target

    def store(self, remote_path: str, data: bytes, permissions: int = 0o644) -> None:
        target = self.path_for(remote_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        os.chmod(target, permissions)


class EbookConvertConverter(ConverterGateway):
    """Run calibre's `ebook-convert <input> <output>` as a child process."""

    def __init__(self, binary: str = "ebook-convert") -> None:
        self._binary = binary

    async def convert(self, input_path: str, output_path: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                input_path,
                output_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ConversionFailed(f"Conversion failed: could not start {self._binary}: {e}") from e

        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            # timeout or cancellation upstream; do not leave the child running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if proc.returncode != 0:
            raise ConversionFailed(
                f"Conversion failed: {self._binary} exited with status {proc.returncode}",
                output=output,
                returncode=proc.returncode,
            )
        if not Path(output_path).exists():
            raise ConversionFailed(
                f"Conversion failed: {self._binary} produced no output file",
                output=output,
                returncode=proc.returncode,
            )
        return output_path

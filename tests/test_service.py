import asyncio
import os
import stat
import threading
import time
from pathlib import Path

import pytest

import epub_relay.conversion.service as service_mod
from epub_relay.conversion.errors import (
    ConversionFailed,
    FetchFailed,
    JobBusy,
    JobCancelled,
    PersistFailed,
    ReadBackFailed,
    RequestMalformed,
    StageTimeout,
    UploadFailed,
)
from fakes import DummyConverter, DummyFetcher, DummyStorage, drain, make_service

URL = "https://example.org/book.epub"


def _run_with_listener(service, url=URL):
    async def scenario():
        _, channel = service.broadcaster.register()
        try:
            result = await service.convert(url)
            error = None
        except Exception as e:
            result, error = None, e
        return result, error, await drain(channel)

    return asyncio.run(scenario())


def test_successful_job_end_to_end(tmp_path):
    fetcher = DummyFetcher(data=b"x" * 42)
    storage = DummyStorage()
    modes: list[int] = []

    class CheckingConverter(DummyConverter):
        async def convert(self, input_path, output_path):
            modes.append(stat.S_IMODE(os.stat(input_path).st_mode))
            return await super().convert(input_path, output_path)

    converter = CheckingConverter()
    service = make_service(tmp_path, fetcher, converter, storage)

    result, error, events = _run_with_listener(service)

    assert error is None
    assert result.to_response() == {"status": "success"}
    assert result.size_bytes == 42
    assert fetcher.calls == [URL]

    (input_path, output_path), = converter.calls
    assert Path(input_path).name == "book.epub"
    assert Path(output_path).name == "book.pdf"
    assert Path(input_path).parent == Path(output_path).parent
    assert Path(input_path).parent.parent == service.scratch_dir
    assert modes == [0o644]

    assert storage.stored == [("/book.pdf", b"%PDF-" + b"x" * 42, 0o644)]
    assert not Path(input_path).exists()
    assert not Path(output_path).exists()
    assert list(service.scratch_dir.iterdir()) == []

    assert [e.get("step") for e in events] == [1, 2, 3, 4, 5, None]
    assert [e["status"] for e in events] == [
        "downloading", "downloaded", "converting", "uploading", "cleaning", "complete",
    ]
    assert service.active_jobs == []


def test_download_failure_stops_before_convert(tmp_path):
    converter = DummyConverter()
    storage = DummyStorage()
    service = make_service(tmp_path, DummyFetcher(exc=OSError("connection refused")), converter, storage)

    result, error, events = _run_with_listener(service)

    assert result is None
    assert isinstance(error, FetchFailed)
    assert error.stage == "downloading"
    assert "connection refused" in error.message
    assert events == [{"step": 1, "status": "downloading"}]
    assert converter.calls == []
    assert storage.stored == []
    assert list(service.scratch_dir.iterdir()) == []


def test_conversion_failure_reports_converting_stage(tmp_path):
    storage = DummyStorage()
    service = make_service(tmp_path, converter=DummyConverter(fail=True), storage=storage)

    _, error, events = _run_with_listener(service)

    assert isinstance(error, ConversionFailed)
    assert error.stage == "converting"
    assert error.to_detail()["code"] == "conversion_failed"
    assert [e["step"] for e in events] == [1, 2, 3]
    assert storage.stored == []
    assert list(service.scratch_dir.iterdir()) == []


def test_upload_failure_is_terminal(tmp_path):
    service = make_service(tmp_path, storage=DummyStorage(exc=RuntimeError("507 Insufficient Storage")))

    _, error, events = _run_with_listener(service)

    assert isinstance(error, UploadFailed)
    assert error.stage == "uploading"
    assert [e["step"] for e in events] == [1, 2, 3, 4]
    assert list(service.scratch_dir.iterdir()) == []


@pytest.mark.parametrize(
    "url",
    [
        "https://example.org/book.pdf",
        "https://example.org/book",
        "https://example.org/.epub",
        "ftp://example.org/book.epub",
        "book.epub",
    ],
)
def test_malformed_source_is_rejected_before_any_event(tmp_path, url):
    fetcher = DummyFetcher()
    service = make_service(tmp_path, fetcher=fetcher)

    _, error, events = _run_with_listener(service, url)

    assert isinstance(error, RequestMalformed)
    assert error.status_code == 400
    assert events == []
    assert fetcher.calls == []


def test_derive_paths_decodes_and_ignores_query(tmp_path):
    service = make_service(tmp_path)
    paths = service.derive_paths("https://example.org/shelf/My%20Book.EPUB?download=1#top", "job1")

    assert Path(paths.job_dir) == service.scratch_dir / "job1"
    assert Path(paths.input_path).name == "My Book.EPUB"
    assert Path(paths.output_path).name == "My Book.pdf"
    assert paths.remote_path == "/My Book.pdf"


def test_second_request_is_rejected_while_busy(tmp_path):
    async def scenario():
        gate = asyncio.Event()
        converter = DummyConverter(gate=gate)
        service = make_service(tmp_path, converter=converter)
        first = asyncio.create_task(service.convert(URL))
        await converter.started.wait()
        with pytest.raises(JobBusy):
            await service.convert("https://example.org/other.epub")
        gate.set()
        return await first

    result = asyncio.run(scenario())
    assert result.remote_path == "/book.pdf"


def test_stage_timeout_still_cleans_up(tmp_path):
    async def scenario():
        converter = DummyConverter(gate=asyncio.Event())
        service = make_service(tmp_path, converter=converter, convert_timeout=0.05)
        _, channel = service.broadcaster.register()
        with pytest.raises(StageTimeout) as info:
            await service.convert(URL)
        return service, info.value, await drain(channel)

    service, error, events = asyncio.run(scenario())
    assert error.stage == "converting"
    assert error.status_code == 504
    assert [e["step"] for e in events] == [1, 2, 3]
    assert list(service.scratch_dir.iterdir()) == []
    assert service.active_jobs == []


def test_cancel_aborts_job_but_keeps_listeners(tmp_path):
    async def scenario():
        converter = DummyConverter(gate=asyncio.Event())
        service = make_service(tmp_path, converter=converter)
        _, channel = service.broadcaster.register()
        job = asyncio.create_task(service.convert(URL))
        await converter.started.wait()
        assert service.cancel() == 1
        with pytest.raises(JobCancelled) as info:
            await job
        return service, info.value, channel

    service, error, channel = asyncio.run(scenario())
    assert error.stage == "converting"
    assert not channel.closed
    assert len(service.broadcaster) == 1
    assert list(service.scratch_dir.iterdir()) == []


def test_listener_joining_mid_job_sees_only_later_steps(tmp_path):
    late: dict[str, object] = {}

    async def scenario():
        service = make_service(tmp_path)

        def join():
            late["channel"] = service.broadcaster.register()[1]

        service._converter.on_start = join
        await service.convert(URL)
        return await drain(late["channel"])

    events = asyncio.run(scenario())
    assert [e.get("step") for e in events] == [4, 5, None]


def test_cleanup_failure_does_not_change_outcome(tmp_path, monkeypatch):
    def broken_rmtree(path, *a, **kw):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(service_mod.shutil, "rmtree", broken_rmtree)
    service = make_service(tmp_path)

    result, error, events = _run_with_listener(service)

    assert error is None
    assert result.to_response() == {"status": "success"}
    assert len(result.cleanup_errors) == 1
    assert "Permission denied" in result.cleanup_errors[0]
    assert events[-1] == {"status": "complete"}


def test_cancel_during_local_write_leaves_no_files(tmp_path):
    writing = threading.Event()

    async def scenario():
        service = make_service(tmp_path)
        _, channel = service.broadcaster.register()
        original = service._persist

        def slow_persist(job, data):
            writing.set()
            time.sleep(0.3)
            original(job, data)

        service._persist = slow_persist
        job = asyncio.create_task(service.convert(URL))
        while not writing.is_set():
            await asyncio.sleep(0.01)
        service.cancel()
        with pytest.raises(JobCancelled) as info:
            await job
        return service, info.value, await drain(channel)

    service, error, events = asyncio.run(scenario())
    assert error.stage == "downloading"
    assert events == [{"step": 1, "status": "downloading"}]
    assert list(service.scratch_dir.rglob("*")) == []


def test_local_write_failure_is_persist_failed(tmp_path, monkeypatch):
    def broken_chmod(path, mode):
        raise PermissionError(1, "Operation not permitted", str(path))

    monkeypatch.setattr(service_mod.os, "chmod", broken_chmod)
    converter = DummyConverter()
    service = make_service(tmp_path, converter=converter)

    _, error, events = _run_with_listener(service)

    assert isinstance(error, PersistFailed)
    assert error.code == "persist_failed"
    assert error.stage == "downloading"
    assert error.status_code == 500
    assert events == [{"step": 1, "status": "downloading"}]
    assert converter.calls == []
    assert list(service.scratch_dir.iterdir()) == []


def test_missing_converted_file_is_read_back_failed(tmp_path):
    class NoOutputConverter(DummyConverter):
        async def convert(self, input_path, output_path):
            self.calls.append((input_path, output_path))
            return output_path

    storage = DummyStorage()
    service = make_service(tmp_path, converter=NoOutputConverter(), storage=storage)

    _, error, events = _run_with_listener(service)

    assert isinstance(error, ReadBackFailed)
    assert error.code == "read_back_failed"
    assert error.stage == "uploading"
    assert error.status_code == 500
    assert [e["step"] for e in events] == [1, 2, 3, 4]
    assert storage.stored == []
    assert list(service.scratch_dir.iterdir()) == []

import asyncio
import io
import threading
import zipfile

import pytest
from fastapi.responses import PlainTextResponse, StreamingResponse

from converter import db
from converter.batch import FAILURE_MANIFEST, BatchOrchestrator
from converter.conversion.encoder import Encoder
from converter.conversion.models import BatchStatus, EncodeOptions, JobStatus


def _stage(batch, items):
    jobs = []
    for name, content in items:
        job = batch.add_job(name, name.rsplit(".", 1)[0] + ".webp")
        job.input_path.write_bytes(content)
        jobs.append(job)
    return jobs


async def _body(response: StreamingResponse) -> bytes:
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.asyncio
async def test_all_jobs_succeed(orchestrator, work_dir):
    batch = orchestrator.open_batch()
    _stage(batch, [("a.png", b"aa"), ("b.jpg", b"bb"), ("c.gif", b"cc")])
    await orchestrator.run(batch, EncodeOptions())
    assert batch.status == BatchStatus.SUCCEEDED
    assert all(j.status == JobStatus.SUCCEEDED for j in batch.jobs)

    response = orchestrator.build_response(batch)
    assert isinstance(response, StreamingResponse)
    assert response.headers["x-batch-id"] == batch.batch_id
    assert "converted-images.webp.zip" in response.headers["content-disposition"]
    data = await _body(response)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["a.webp", "b.webp", "c.webp"]
        assert zf.read("b.webp") == b"RIFFbbWEBP"
    # stream completion released the workspace
    assert batch.workspace.released
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_single_job_returns_the_file(orchestrator, work_dir):
    batch = orchestrator.open_batch()
    (job,) = _stage(batch, [("photo.png", b"px")])
    await orchestrator.run(batch, EncodeOptions())
    response = orchestrator.build_response(batch)
    assert isinstance(response, StreamingResponse)
    assert 'filename="photo.webp"' in response.headers["content-disposition"]
    assert response.headers["content-length"] == str(len(b"RIFFpxWEBP"))
    assert response.media_type == "image/webp"
    assert not batch.workspace.released
    assert await _body(response) == b"RIFFpxWEBP"
    assert batch.workspace.released
    assert not job.input_path.exists()
    assert not job.output_path.exists()
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_single_file_stream_closed_early_releases_workspace(orchestrator, work_dir):
    batch = orchestrator.open_batch()
    _stage(batch, [("photo.png", b"px")])
    await orchestrator.run(batch, EncodeOptions())
    body = orchestrator.build_response(batch).body_iterator
    assert await body.__anext__() == b"RIFFpxWEBP"
    # client went away before the body finished
    await body.aclose()
    assert batch.workspace.released
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_zip_stream_closed_early_releases_workspace(orchestrator, work_dir):
    batch = orchestrator.open_batch()
    _stage(batch, [("a.png", b"aa"), ("b.png", b"bb")])
    await orchestrator.run(batch, EncodeOptions())
    body = orchestrator.build_response(batch).body_iterator
    await body.__anext__()
    await body.aclose()
    assert batch.workspace.released
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_one_failure_fails_the_batch_and_removes_everything(orchestrator, work_dir):
    batch = orchestrator.open_batch()
    jobs = _stage(batch, [("a.png", b"aa"), ("broken.png", b"FAIL"), ("c.png", b"cc")])
    await orchestrator.run(batch, EncodeOptions())
    assert batch.status == BatchStatus.FAILED
    # the join waited for every job, including those after the failure
    assert [j.status for j in jobs] == [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SUCCEEDED]

    response = orchestrator.build_response(batch)
    assert isinstance(response, PlainTextResponse)
    assert response.status_code == 500
    assert "broken.png" in response.body.decode()
    assert batch.workspace.released
    for job in jobs:
        assert not job.input_path.exists()
        assert not job.output_path.exists()
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_partial_policy_zips_successes_with_manifest(fake_encoder, tmp_path):
    orch = BatchOrchestrator(fake_encoder, work_dir=tmp_path, max_workers=2, failure_policy="partial")
    try:
        batch = orch.open_batch()
        _stage(batch, [("a.png", b"aa"), ("bad.png", b"FAIL")])
        await orch.run(batch, EncodeOptions())
        assert batch.status == BatchStatus.PARTIAL
        data = await _body(orch.build_response(batch))
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert zf.namelist() == ["a.webp", FAILURE_MANIFEST]
            assert b"bad.png" in zf.read(FAILURE_MANIFEST)
        assert list(tmp_path.iterdir()) == []
    finally:
        orch.close()


@pytest.mark.asyncio
async def test_partial_policy_still_fails_when_nothing_converted(fake_encoder, tmp_path):
    orch = BatchOrchestrator(fake_encoder, work_dir=tmp_path, failure_policy="partial")
    try:
        batch = orch.open_batch()
        _stage(batch, [("x.png", b"FAIL"), ("y.png", b"FAIL")])
        await orch.run(batch, EncodeOptions())
        assert batch.status == BatchStatus.FAILED
        assert orch.build_response(batch).status_code == 500
    finally:
        orch.close()


def test_unknown_policy_defaults_to_all_or_nothing(fake_encoder, tmp_path):
    orch = BatchOrchestrator(fake_encoder, work_dir=tmp_path, failure_policy="whatever")
    assert orch.failure_policy == "all_or_nothing"
    orch.close()


def test_duplicate_display_names_are_suffixed(orchestrator):
    batch = orchestrator.open_batch()
    first = batch.add_job("a.png", "a.webp")
    second = batch.add_job("a.jpg", "a.webp")
    assert (first.display_name, second.display_name) == ("a.webp", "a-2.webp")
    assert first.input_path != second.input_path
    batch.release()


@pytest.mark.asyncio
async def test_batch_outcome_is_recorded(orchestrator):
    batch = orchestrator.open_batch()
    _stage(batch, [("ok.png", b"ok"), ("nope.png", b"FAIL")])
    await orchestrator.run(batch, EncodeOptions())
    orchestrator.build_response(batch)
    record = db.get_batch_from_db(batch.batch_id)
    assert record["status"] == "failed"
    assert record["file_count"] == 2
    assert record["failed_count"] == 1
    assert "nope.png" in record["error"]
    assert [j["filename"] for j in record["jobs"]] == ["ok.png", "nope.png"]
    assert [j["status"] for j in record["jobs"]] == ["succeeded", "failed"]


class _GatedEncoder(Encoder):
    name = "gated"

    def __init__(self):
        self.gate = threading.Event()
        self.started = threading.Event()

    def encode(self, input_path, output_path, options):
        self.started.set()
        self.gate.wait(5)
        output_path.write_bytes(b"late")
        return output_path


@pytest.mark.asyncio
async def test_cancelled_run_releases_once_jobs_settle(tmp_path):
    encoder = _GatedEncoder()
    orch = BatchOrchestrator(encoder, work_dir=tmp_path, max_workers=1)
    try:
        batch = orch.open_batch()
        (job,) = _stage(batch, [("slow.png", b"x")])
        task = asyncio.create_task(orch.run(batch, EncodeOptions()))
        while not encoder.started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not batch.workspace.released

        encoder.gate.set()
        for _ in range(250):
            if batch.workspace.released:
                break
            await asyncio.sleep(0.02)
        assert batch.workspace.released
        assert not job.output_path.exists()
        assert not batch.workspace.path.exists()
    finally:
        orch.close()

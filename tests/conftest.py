from __future__ import annotations

import os
import tempfile
from pathlib import Path

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="converter-tests-"))

os.environ.setdefault("WORK_DIR", str(_TEST_ROOT / "work"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{(_TEST_ROOT / 'ledger.db').as_posix()}")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from converter import db  # noqa: E402
from converter.batch import BatchOrchestrator, get_batch_orchestrator  # noqa: E402
from converter.conversion.encoder import EncodeError, Encoder  # noqa: E402
from converter.conversion.models import EncodeOptions  # noqa: E402

FAIL_MARKER = b"FAIL"


class FakeEncoder(Encoder):
    """Writes a fake WebP payload; inputs starting with FAIL leave a partial output and fail."""

    name = "fake"

    def __init__(self):
        self.calls: list[tuple[Path, Path, EncodeOptions]] = []

    def encode(self, input_path: Path, output_path: Path, options: EncodeOptions) -> Path:
        self.calls.append((input_path, output_path, options))
        data = input_path.read_bytes()
        if data.startswith(FAIL_MARKER):
            output_path.write_bytes(b"partial")
            raise EncodeError("Unsupported image format")
        output_path.write_bytes(b"RIFF" + data + b"WEBP")
        return output_path


@pytest.fixture(scope="session", autouse=True)
def ledger() -> None:
    db.init_db()


@pytest.fixture()
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture()
def orchestrator(fake_encoder: FakeEncoder, work_dir: Path):
    orch = BatchOrchestrator(fake_encoder, work_dir=work_dir, max_workers=4)
    yield orch
    orch.close()


@pytest.fixture()
def client(orchestrator: BatchOrchestrator):
    from converter.main import app

    app.dependency_overrides[get_batch_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

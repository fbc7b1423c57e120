"""
Global test fixtures for shuttlr tests
"""
import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator

from shuttlr.config import Config
from shuttlr.transfer import TransferRegistry

from tests.fixtures.fakes import FakeDataChannel, FakeNetwork, SignalingHub


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files"""
    path = Path(tempfile.mkdtemp(prefix="shuttlr_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def sample_file(temp_dir: Path) -> Path:
    """Create a sample text file for testing"""
    file_path = temp_dir / "sample.txt"
    file_path.write_text("Hello, World! This is a test file.")
    return file_path


@pytest.fixture
def large_payload() -> bytes:
    """1,500,000 bytes of non-repeating-ish data"""
    return bytes((i * 31 + i // 251) % 256 for i in range(1_500_000))


@pytest.fixture
def large_sample_file(temp_dir: Path, large_payload: bytes) -> Path:
    """Create a larger file for chunked transfer testing"""
    file_path = temp_dir / "large_sample.bin"
    file_path.write_bytes(large_payload)
    return file_path


@pytest.fixture
def open_channel() -> FakeDataChannel:
    """A data channel that is already open"""
    return FakeDataChannel(ready_state='open')


@pytest.fixture
def registry() -> TransferRegistry:
    return TransferRegistry()


@pytest.fixture
def fast_config(temp_dir: Path) -> Config:
    """Config with all delays shrunk for tests"""
    return Config(
        signaling_url='ws://relay.test',
        offer_delay=0,
        send_delay=0,
        buffer_poll_interval=0.001,
        buffer_timeout=0.2,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        download_dir=temp_dir / "downloads",
    )


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def hub() -> SignalingHub:
    return SignalingHub()

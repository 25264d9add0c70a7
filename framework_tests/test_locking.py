import pathlib as pl
import threading
import time

import pytest

from colo_fleet.utils import locking


@pytest.fixture
def lock_path(tmp_path: pl.Path) -> pl.Path:
    return tmp_path / ".colo-lease.lock"


class TestAdvisoryLock:
    def test_shared_locks_compatible(self, lock_path: pl.Path):
        first = locking.AdvisoryLock(lock_path)
        second = locking.AdvisoryLock(lock_path)

        with first.shared(timeout=0.2), second.shared(timeout=0.2):
            assert first.is_locked
            assert second.is_locked

        assert not first.is_locked
        assert not second.is_locked

    def test_exclusive_fails_immediately(self, lock_path: pl.Path):
        reader = locking.AdvisoryLock(lock_path)
        writer = locking.AdvisoryLock(lock_path)

        with reader.shared(timeout=0.2):
            start = time.monotonic()
            with pytest.raises(locking.LockUnavailable):
                writer.acquire_exclusive_nonblocking()
            assert time.monotonic() - start < 1

        assert not writer.is_locked

    def test_exclusive_excludes_exclusive(self, lock_path: pl.Path):
        first = locking.AdvisoryLock(lock_path)
        second = locking.AdvisoryLock(lock_path)

        with first.exclusive():
            with pytest.raises(locking.LockUnavailable):
                second.acquire_exclusive_nonblocking()

        # Available again once released
        with second.exclusive():
            assert second.is_locked

    def test_shared_waits_for_exclusive(self, lock_path: pl.Path):
        writer = locking.AdvisoryLock(lock_path)
        reader = locking.AdvisoryLock(lock_path)

        with writer.exclusive():
            start = time.monotonic()
            with pytest.raises(locking.LockUnavailable):
                reader.acquire_shared(timeout=0.3)
            assert time.monotonic() - start >= 0.3

        reader.acquire_shared(timeout=0.3)
        reader.release()

    def test_shared_blocks_until_released(self, lock_path: pl.Path):
        writer = locking.AdvisoryLock(lock_path)
        reader = locking.AdvisoryLock(lock_path)
        acquired = threading.Event()

        def _read() -> None:
            with reader.shared():
                acquired.set()

        thread = threading.Thread(target=_read)
        with writer.exclusive():
            thread.start()
            assert not acquired.wait(timeout=0.3)

        assert acquired.wait(timeout=10)
        thread.join(timeout=10)
        assert not reader.is_locked

    def test_already_held(self, lock_path: pl.Path):
        lock = locking.AdvisoryLock(lock_path)
        with lock.shared(), pytest.raises(RuntimeError, match="already held"):
            lock.acquire_exclusive_nonblocking()

    def test_lock_file_kept(self, lock_path: pl.Path):
        with locking.AdvisoryLock(lock_path).exclusive():
            pass
        assert lock_path.exists()

"""Tests for UserLockManager."""

import threading
import time

from lifecycle_engine.user_lock import UserLockManager


class TestUserLockManager:

    def test_in_process_only_by_default(self, monkeypatch):
        monkeypatch.delenv("LIFECYCLE_LOCK_DIR", raising=False)
        assert UserLockManager().lock_dir is None

    def test_same_user_serialises(self):
        manager = UserLockManager()
        events = []

        def worker(name):
            with manager.lock("u1", "v1"):
                events.append(f"{name}-in")
                time.sleep(0.05)
                events.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert events[0][0] == events[1][0]
        assert events[2][0] == events[3][0]

    def test_different_users_do_not_block(self):
        manager = UserLockManager()
        with manager.lock("u1", "v1"):
            acquired = threading.Event()

            def other():
                with manager.lock("u2", "v1"):
                    acquired.set()

            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=1)
            thread.join()

    def test_lock_released_on_error(self):
        manager = UserLockManager()
        try:
            with manager.lock("u1"):
                raise RuntimeError("fail")
        except RuntimeError:
            pass
        with manager.lock("u1"):
            pass

    def test_lock_dir(self, tmp_path):
        manager = UserLockManager(str(tmp_path / "locks"))
        assert manager.lock_dir == (tmp_path / "locks").resolve()

        with manager.lock("u1", "v1"):
            files = list(manager.lock_dir.glob("*.lock"))
        assert len(files) == 1

        with manager.lock("u1", "v1"):
            pass
        assert len(list(manager.lock_dir.glob("*.lock"))) == 1

    def test_lock_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LIFECYCLE_LOCK_DIR", str(tmp_path))
        assert UserLockManager().lock_dir == tmp_path.resolve()

    def test_lock_table_emptied_after_release(self):
        manager = UserLockManager()
        for i in range(100):
            with manager.lock(f"u{i}", "v1"):
                assert list(manager._locks) == [(f"u{i}", "v1")]
        assert manager._locks == {}

    def test_lock_table_emptied_after_error(self):
        manager = UserLockManager()
        try:
            with manager.lock("u1", "v1"):
                raise RuntimeError("fail")
        except RuntimeError:
            pass
        assert manager._locks == {}

    def test_waiting_thread_keeps_entry_alive(self):
        manager = UserLockManager()
        entered = threading.Event()

        def waiter():
            with manager.lock("u1", "v1"):
                entered.set()

        with manager.lock("u1", "v1"):
            thread = threading.Thread(target=waiter)
            thread.start()
            deadline = time.monotonic() + 1
            while manager._locks[("u1", "v1")].users < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert manager._locks[("u1", "v1")].users == 2
            assert not entered.is_set()
        thread.join(timeout=1)
        assert entered.is_set()
        assert manager._locks == {}

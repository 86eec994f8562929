import asyncio
import pytest

from redis.exceptions import ConnectionError as RedisConnectionError

from ckd_alerts.services.concurrency import (
    KeyedLockManager, LockTimeoutError, RetryConfig, retry_with_backoff, RedisTickClaim, ClaimOutcome
)


class TestKeyedLockManager:

    async def test_same_key_serialized(self):
        locks = KeyedLockManager()
        order = []

        async def worker(name):
            async with locks.hold("patient-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_different_keys_independent(self):
        locks = KeyedLockManager()
        async with locks.hold("patient-1"):
            async with locks.hold("patient-2", timeout_seconds=0.1):
                pass

    async def test_timeout(self):
        locks = KeyedLockManager()
        async with locks.hold("patient-1", "evaluate"):
            assert locks.get_lock_status("patient-1")["operation_type"] == "evaluate"
            with pytest.raises(LockTimeoutError):
                async with locks.hold("patient-1", timeout_seconds=0.05):
                    pass

        assert locks.get_lock_status("patient-1") is None

    async def test_released_after_exception(self):
        locks = KeyedLockManager()
        with pytest.raises(RuntimeError):
            async with locks.hold("patient-1"):
                raise RuntimeError("boom")

        async with locks.hold("patient-1", timeout_seconds=0.05):
            pass


class TestRetry:

    def test_delay_grows_and_caps(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [config.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_half_to_full_delay(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        for _ in range(20):
            assert 1.0 <= config.delay_for(1) <= 2.0

    async def test_retry_with_backoff_eventually_succeeds(self):
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("reset")
            return "ok"

        result = await retry_with_backoff(flaky, "flaky", RetryConfig(max_attempts=3, base_delay=0.001))
        assert result == "ok"
        assert calls["n"] == 3

    async def test_retry_with_backoff_gives_up(self):
        async def broken():
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            await retry_with_backoff(broken, "broken", RetryConfig(max_attempts=2, base_delay=0.001))

    async def test_other_errors_not_retried(self):
        calls = {"n": 0}

        async def invalid():
            calls["n"] += 1
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await retry_with_backoff(invalid, "invalid")
        assert calls["n"] == 1


class TestRedisTickClaim:

    async def test_acquired(self, mock_redis):
        claim = RedisTickClaim(mock_redis, "ckd:tick", ttl_seconds=90)
        outcome, token = await claim.acquire()

        assert outcome == ClaimOutcome.ACQUIRED
        mock_redis.set.assert_awaited_once_with("ckd:tick", token, nx=True, ex=90)

    async def test_held_elsewhere(self, mock_redis):
        mock_redis.set.return_value = None
        outcome, token = await RedisTickClaim(mock_redis, "ckd:tick").acquire()

        assert outcome == ClaimOutcome.HELD_ELSEWHERE
        assert token is None

    async def test_unavailable(self, mock_redis):
        mock_redis.set.side_effect = RedisConnectionError("refused")
        outcome, _ = await RedisTickClaim(mock_redis, "ckd:tick").acquire()
        assert outcome == ClaimOutcome.UNAVAILABLE

    async def test_release_only_own_token(self, mock_redis):
        claim = RedisTickClaim(mock_redis, "ckd:tick")
        assert await claim.release("token-1") is True

        mock_redis.eval.return_value = 0
        assert await claim.release("stale-token") is False
        assert mock_redis.eval.await_args.args[1:] == (1, "ckd:tick", "stale-token")

    async def test_release_failure_logged_not_raised(self, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("gone")
        assert await RedisTickClaim(mock_redis, "ckd:tick").release("token") is False

import pytest

from mfa_engine.core.exceptions import ConcurrentUpdateError, InvalidSecondFactorError
from mfa_engine.services.retry import retry_on_conflict


class TestRetryOnConflict:
    @pytest.mark.asyncio
    async def test_lost_race_is_retried_once(self) -> None:
        calls = []

        async def operation() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentUpdateError()
            return "done"

        assert await retry_on_conflict(operation) == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_the_last_attempt(self) -> None:
        calls = []

        async def operation() -> None:
            calls.append(1)
            raise ConcurrentUpdateError()

        with pytest.raises(ConcurrentUpdateError):
            await retry_on_conflict(operation, attempts=3)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self) -> None:
        calls = []

        async def operation() -> None:
            calls.append(1)
            raise InvalidSecondFactorError()

        with pytest.raises(InvalidSecondFactorError):
            await retry_on_conflict(operation)
        assert len(calls) == 1

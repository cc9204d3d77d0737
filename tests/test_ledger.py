"""
Tests for the transactional store: transient-error classification,
whole-transaction retry and rollback.
"""
from typing import Any

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from agency_ledger.core import ledger
from agency_ledger.core.exceptions import TransientStorageError
from agency_ledger.core.membership_engine import MembershipEngine
from agency_ledger.database.models import Agency, Escort, Membership, MembershipStatus


class DriverError(Exception):
    def __init__(self, message: str, sqlstate: Any = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def driver_failure(message: str, sqlstate: Any = None, **kwargs: Any) -> DBAPIError:
    return OperationalError("UPDATE agencies", {}, DriverError(message, sqlstate), **kwargs)


@pytest.mark.unit
class TestIsTransient:
    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "55P03"])
    def test_retryable_sqlstates(self, sqlstate: str) -> None:
        assert ledger.is_transient(driver_failure("could not serialize access", sqlstate))

    def test_sqlite_lock(self) -> None:
        assert ledger.is_transient(driver_failure("database is locked"))

    def test_invalidated_connection(self) -> None:
        assert ledger.is_transient(
            driver_failure("server closed", connection_invalidated=True)
        )

    def test_constraint_violation_is_not_transient(self) -> None:
        assert not ledger.is_transient(
            driver_failure("duplicate key value violates unique constraint", "23505")
        )

    def test_non_driver_errors_are_not_transient(self) -> None:
        assert not ledger.is_transient(ValueError("database is locked"))


@pytest.mark.integration
class TestTransactionRollback:
    @pytest.mark.asyncio
    async def test_transient_failure_mid_transition_leaves_no_partial_state(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        load: Any,
        mocker: Any,
        test_settings: Any,
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()
        requested = await engine.request_join(escort.id, agency.id)
        version = (await load(Escort, escort.id)).membership_version
        cascade = mocker.patch.object(
            ledger, "cascade_auto_cancel", side_effect=driver_failure("database is locked")
        )

        with pytest.raises(TransientStorageError) as exc_info:
            await engine.manage_membership_request(requested.membership.id, "approve")

        assert exc_info.value.http_status == 503
        assert cascade.await_count == test_settings.transaction_retry_attempts
        stored_agency = await load(Agency, agency.id)
        assert stored_agency.active_escorts == 0
        assert stored_agency.total_escorts == 0
        membership = await load(Membership, requested.membership.id)
        assert membership.status == MembershipStatus.PENDING.value
        assert membership.approved_at is None
        assert (await load(Escort, escort.id)).membership_version == version

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_transient_failure(
        self,
        engine: MembershipEngine,
        make_escort: Any,
        make_agency: Any,
        load: Any,
        mocker: Any,
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()
        requested = await engine.request_join(escort.id, agency.id)
        real_cascade = ledger.cascade_auto_cancel
        calls = []

        async def flaky_cascade(*args: Any, **kwargs: Any) -> Any:
            calls.append(args)
            if len(calls) == 1:
                raise driver_failure("database is locked")
            return await real_cascade(*args, **kwargs)

        mocker.patch.object(ledger, "cascade_auto_cancel", side_effect=flaky_cascade)

        result = await engine.manage_membership_request(requested.membership.id, "approve")

        assert len(calls) == 2
        assert result.membership.status == MembershipStatus.ACTIVE.value
        stored_agency = await load(Agency, agency.id)
        assert stored_agency.active_escorts == 1
        assert stored_agency.total_escorts == 1

import pytest

from relay.schemas.entitlements import Entitlements, EntitlementSnapshot, Identity, Plan
from relay.services import identity as identity_service
from relay.services.identity import IdentityDirectory, IdentityRejected

GUEST_ID = "guest_123e4567-e89b-12d3-a456-426614174000"


def _snapshot(limit: int, used: int, cap: int, elapsed: int) -> EntitlementSnapshot:
    return EntitlementSnapshot.from_counters(
        Entitlements(plan=Plan.FREE, daily_seconds_limit=limit, per_chat_seconds_cap=cap),
        daily_seconds_used=used,
        chat_seconds_elapsed=elapsed,
    )


def test_remaining_and_flags() -> None:
    snapshot = _snapshot(limit=900, used=600, cap=300, elapsed=100)
    assert snapshot.remaining_today == 300
    assert snapshot.remaining_this_chat == 200
    assert snapshot.paywall is False
    assert snapshot.hard_stop is False

    exhausted = _snapshot(limit=900, used=950, cap=300, elapsed=300)
    assert exhausted.remaining_today == 0
    assert exhausted.paywall is True
    assert exhausted.hard_stop is True


def test_zero_limits_mean_unlimited() -> None:
    snapshot = _snapshot(limit=0, used=10_000, cap=0, elapsed=10_000)
    assert snapshot.remaining_today is None
    assert snapshot.remaining_this_chat is None
    assert snapshot.paywall is False
    assert snapshot.hard_stop is False


def test_ledger_keys_separate_guests_and_users() -> None:
    assert Identity.guest("abc").ledger_key != Identity.user("abc").ledger_key


@pytest.mark.asyncio
async def test_resolve_prefers_registered_token() -> None:
    directory = IdentityDirectory()
    await directory.register("tok-1", "user-1", Plan.PRO)

    identity = await directory.resolve(token="tok-1", guest_id=GUEST_ID)

    assert identity == Identity.user("user-1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("token", "guest_id"),
    [
        ("unknown", None),
        (None, "guest_not-a-uuid"),
        (None, "123e4567-e89b-12d3-a456-426614174000"),
        (None, None),
    ],
)
async def test_resolve_rejects_bad_identities(token, guest_id) -> None:
    directory = IdentityDirectory()
    with pytest.raises(IdentityRejected):
        await directory.resolve(token=token, guest_id=guest_id)


@pytest.mark.asyncio
async def test_resolve_accepts_guest_id() -> None:
    identity = await IdentityDirectory().resolve(token=None, guest_id=GUEST_ID)
    assert identity.is_guest
    assert identity.id == GUEST_ID


@pytest.mark.asyncio
async def test_load_entitlements_by_identity(monkeypatch) -> None:
    monkeypatch.setattr(identity_service.settings, "free_daily_seconds", 900)
    monkeypatch.setattr(identity_service.settings, "free_chat_seconds_cap", 600)
    monkeypatch.setattr(identity_service.settings, "pro_chat_seconds_cap", 3600)

    directory = IdentityDirectory()
    await directory.register("tok-free", "free-user", Plan.FREE)
    await directory.register("tok-pro", "pro-user", Plan.PRO)

    guest = await directory.load_entitlements(Identity.guest(GUEST_ID))
    free = await directory.load_entitlements(Identity.user("free-user"))
    pro = await directory.load_entitlements(Identity.user("pro-user"))
    unknown = await directory.load_entitlements(Identity.user("never-registered"))

    assert (guest.daily_seconds_limit, guest.per_chat_seconds_cap) == (900, 900)
    assert (free.daily_seconds_limit, free.per_chat_seconds_cap) == (900, 600)
    assert (pro.plan, pro.daily_seconds_limit, pro.per_chat_seconds_cap) == (Plan.PRO, 0, 3600)
    assert unknown.plan is Plan.FREE


@pytest.mark.asyncio
async def test_plan_change_applies_on_next_load() -> None:
    directory = IdentityDirectory()
    await directory.register("tok", "user-1", Plan.FREE)
    user = Identity.user("user-1")
    assert (await directory.load_entitlements(user)).plan is Plan.FREE

    await directory.register("tok", "user-1", Plan.PRO)

    assert (await directory.load_entitlements(user)).plan is Plan.PRO

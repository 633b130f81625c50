import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import NOW, FixtureMemoryStore, commit, make_listing, make_user, set_entitlement
from directrent.errors import NotFound
from directrent.models import ContactUnlock, User
from directrent.storage.sql import SqlContactStore
from directrent.unlock import UNLIMITED, ContactUnlockService, UnlockOutcome


@pytest.fixture
def owner(store):
    return make_user(store, "+233200000001", role="landlord", name="Kwame Owusu")


@pytest.fixture
def tenant(store):
    return make_user(store, "+233240000002")


@pytest.fixture
def listing(store, owner):
    return make_listing(store, owner)


@pytest.fixture
def service(store):
    return ContactUnlockService(store, clock=lambda: NOW)


def _fresh_quota(store, user, remaining):
    set_entitlement(store, user.id, free_contacts_remaining=remaining, free_contacts_reset_at=NOW - timedelta(days=2))


def _grant_rows(store, user_id):
    if isinstance(store, SqlContactStore):
        return store.db.execute(
            select(func.count(ContactUnlock.id)).where(ContactUnlock.user_id == user_id)
        ).scalar_one()
    return len([g for g, _ in store.list_unlocked(user_id)])


def test_unlock_discloses_owner_and_spends_one(store, service, tenant, listing, owner):
    _fresh_quota(store, tenant, 3)

    result = service.unlock(tenant.id, listing.id)

    assert result.outcome is UnlockOutcome.ALLOWED
    assert result.owner.phone == owner.phone
    assert result.owner.full_name == "Kwame Owusu"
    assert result.contacts_remaining == 2
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 2
    assert store.find_grant(tenant.id, listing.id).unlocked_at is not None


def test_second_unlock_is_idempotent(store, service, tenant, listing):
    _fresh_quota(store, tenant, 3)
    service.unlock(tenant.id, listing.id)

    again = service.unlock(tenant.id, listing.id)

    assert again.outcome is UnlockOutcome.ALREADY_UNLOCKED
    assert again.to_payload()["alreadyUnlocked"] is True
    assert again.contacts_remaining == 2
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 2
    assert _grant_rows(store, tenant.id) == 1


def test_last_free_contact_then_denied(store, service, tenant, owner, listing):
    _fresh_quota(store, tenant, 1)
    other = make_listing(store, owner, "Chamber and hall, Madina")

    assert service.unlock(tenant.id, listing.id).contacts_remaining == 0
    denied = service.unlock(tenant.id, other.id)

    assert denied.outcome is UnlockOutcome.DENIED
    assert denied.owner is None
    payload = denied.to_payload()
    assert payload["requiresSubscription"] is True
    assert payload["error"] == "No contacts remaining"
    assert [t["tier"] for t in payload["subscriptionTiers"]] == ["BASIC", "RELAX", "SUPERUSER"]
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 0
    assert store.find_grant(tenant.id, other.id) is None


def test_reset_after_thirty_days(store, service, tenant, listing):
    set_entitlement(store, tenant.id, free_contacts_remaining=0, free_contacts_reset_at=NOW - timedelta(days=30))

    result = service.unlock(tenant.id, listing.id)

    assert result.outcome is UnlockOutcome.ALLOWED
    record = store.get_entitlement(tenant.id)
    assert record.free_contacts_remaining == 2
    assert record.free_contacts_reset_at == NOW


def test_active_subscription_bypasses_quota(store, service, tenant, listing):
    set_entitlement(
        store,
        tenant.id,
        free_contacts_remaining=0,
        free_contacts_reset_at=NOW - timedelta(days=2),
        subscription_tier="RELAX",
        subscription_expires_at=NOW + timedelta(days=1),
    )

    result = service.unlock(tenant.id, listing.id)

    assert result.outcome is UnlockOutcome.ALLOWED
    assert result.contacts_remaining == 40
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 0


def test_superuser_reports_unlimited(store, service, tenant, listing):
    set_entitlement(
        store,
        tenant.id,
        free_contacts_reset_at=NOW - timedelta(days=2),
        subscription_tier="SUPERUSER",
        subscription_expires_at=NOW + timedelta(days=20),
    )
    assert service.unlock(tenant.id, listing.id).contacts_remaining == UNLIMITED


def test_expired_subscription_falls_back_to_free_quota(store, service, tenant, listing):
    set_entitlement(
        store,
        tenant.id,
        free_contacts_remaining=0,
        free_contacts_reset_at=NOW - timedelta(days=2),
        subscription_tier="RELAX",
        subscription_expires_at=NOW - timedelta(days=1),
    )

    result = service.unlock(tenant.id, listing.id)

    assert result.outcome is UnlockOutcome.DENIED
    assert result.to_payload()["requiresSubscription"] is True


def test_unknown_property_is_not_found(service, tenant):
    with pytest.raises(NotFound) as exc:
        service.unlock(tenant.id, 9999)
    assert exc.value.status_code == 404
    assert exc.value.message == "Property not found"


def test_unknown_user_is_not_found(service, listing):
    with pytest.raises(NotFound) as exc:
        service.unlock(424242, listing.id)
    assert exc.value.message == "User not found"


def test_status_is_read_only(store, service, tenant, listing):
    set_entitlement(store, tenant.id, free_contacts_remaining=0, free_contacts_reset_at=NOW - timedelta(days=40))
    before = store.get_entitlement(tenant.id)

    status = service.status(tenant.id, listing.id)

    assert status.to_payload() == {
        "isUnlocked": False,
        "freeContactsRemaining": 3,
        "subscriptionTier": "FREE",
        "subscriptionActive": False,
    }
    assert store.get_entitlement(tenant.id) == before


def test_unlocked_contacts_newest_first(store, tenant, owner, listing):
    _fresh_quota(store, tenant, 3)
    second = make_listing(store, owner, "Self-contained, Kasoa")
    ContactUnlockService(store, clock=lambda: NOW).unlock(tenant.id, listing.id)
    ContactUnlockService(store, clock=lambda: NOW + timedelta(minutes=5)).unlock(tenant.id, second.id)

    unlocked = store.list_unlocked(tenant.id)

    assert [p.id for _, p in unlocked] == [second.id, listing.id]
    assert store.unlocked_property_ids(tenant.id, [listing.id, second.id, 555]) == {listing.id, second.id}


# -----------------------
# Races
# -----------------------
def test_sql_duplicate_grant_race_returns_already_unlocked(db_session, session_factory):
    store = SqlContactStore(db_session)
    owner = make_user(store, "+233200000001", role="landlord")
    tenant = make_user(store, "+233240000002")
    listing = make_listing(store, owner)
    _fresh_quota(store, tenant, 3)

    # A concurrent request committed the grant after our existence check.
    other = session_factory()
    other.add(ContactUnlock(user_id=tenant.id, property_id=listing.id, unlocked_at=NOW))
    other.commit()
    other.close()
    store.find_grant = lambda *_: None  # type: ignore[method-assign]

    result = ContactUnlockService(store, clock=lambda: NOW).unlock(tenant.id, listing.id)

    assert result.outcome is UnlockOutcome.ALREADY_UNLOCKED
    assert result.to_payload()["success"] is True
    remaining = db_session.execute(select(User.free_contacts_remaining).where(User.id == tenant.id)).scalar_one()
    assert remaining == 3
    assert _grant_rows(store, tenant.id) == 1


def test_stale_record_is_re_evaluated(store, tenant, owner, listing):
    _fresh_quota(store, tenant, 1)
    other = make_listing(store, owner, "Single room, Tema")
    service = ContactUnlockService(store, clock=lambda: NOW)
    real_get = store.get_entitlement
    calls = {"n": 0}

    def get_entitlement_then_spend_elsewhere(user_id):
        record = real_get(user_id)
        calls["n"] += 1
        if calls["n"] == 1:
            # Another tab spends the last contact between our read and our commit.
            ContactUnlockService(store, clock=lambda: NOW).unlock(user_id, other.id)
        return record

    store.get_entitlement = get_entitlement_then_spend_elsewhere  # type: ignore[method-assign]

    result = service.unlock(tenant.id, listing.id)

    store.get_entitlement = real_get  # type: ignore[method-assign]
    assert result.outcome is UnlockOutcome.DENIED
    assert real_get(tenant.id).free_contacts_remaining == 0
    assert store.find_grant(tenant.id, listing.id) is None


def test_record_changing_under_every_read_ends_in_denial(store, tenant, owner, listing):
    _fresh_quota(store, tenant, 3)
    elsewhere = [make_listing(store, owner, f"Chamber and hall {i}") for i in range(3)]
    service = ContactUnlockService(store, clock=lambda: NOW)
    real_get = store.get_entitlement
    state = {"reads": 0, "nested": False}

    def get_entitlement_then_unlock_elsewhere(user_id):
        record = real_get(user_id)
        if state["nested"] or state["reads"] >= len(elsewhere):
            return record
        # Each of our reads is overtaken by an unlock of a different listing.
        state["nested"] = True
        try:
            ContactUnlockService(store, clock=lambda: NOW).unlock(user_id, elsewhere[state["reads"]].id)
        finally:
            state["nested"] = False
        state["reads"] += 1
        return record

    store.get_entitlement = get_entitlement_then_unlock_elsewhere  # type: ignore[method-assign]

    result = service.unlock(tenant.id, listing.id)

    store.get_entitlement = real_get  # type: ignore[method-assign]
    assert result.outcome is UnlockOutcome.DENIED
    assert result.to_payload()["requiresSubscription"] is True
    assert real_get(tenant.id).free_contacts_remaining == 0
    assert store.find_grant(tenant.id, listing.id) is None
    assert all(store.find_grant(tenant.id, p.id) is not None for p in elsewhere)
    assert _grant_rows(store, tenant.id) == 3


def test_concurrent_duplicate_unlocks_grant_once():
    store = FixtureMemoryStore()
    owner = make_user(store, "+233200000001", role="landlord")
    tenant = make_user(store, "+233240000002")
    listing = make_listing(store, owner)
    _fresh_quota(store, tenant, 3)

    barrier = threading.Barrier(2)
    results = []
    errors = []

    def worker():
        try:
            barrier.wait()
            results.append(ContactUnlockService(store, clock=lambda: NOW).unlock(tenant.id, listing.id))
        except Exception as e:  # pragma: no cover - surfaced via assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(r.outcome.value for r in results) == ["ALLOWED", "ALREADY_UNLOCKED"]
    assert store.grant_count() == 1
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 2


def test_concurrent_unlocks_of_different_listings_never_overspend():
    store = FixtureMemoryStore()
    owner = make_user(store, "+233200000001", role="landlord")
    tenant = make_user(store, "+233240000002")
    listings = [make_listing(store, owner, f"Listing {i}") for i in range(6)]
    _fresh_quota(store, tenant, 2)

    barrier = threading.Barrier(len(listings))
    outcomes = []

    def worker(property_id):
        barrier.wait()
        outcomes.append(ContactUnlockService(store, clock=lambda: NOW).unlock(tenant.id, property_id).outcome)

    threads = [threading.Thread(target=worker, args=(p.id,)) for p in listings]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(UnlockOutcome.ALLOWED) == 2
    assert outcomes.count(UnlockOutcome.DENIED) == 4
    assert store.grant_count() == 2
    assert store.get_entitlement(tenant.id).free_contacts_remaining == 0


def test_admin_override_during_unlock_is_honoured(store, tenant, listing):
    _fresh_quota(store, tenant, 2)
    service = ContactUnlockService(store, clock=lambda: NOW)
    real_get = store.get_entitlement
    calls = {"n": 0}

    def get_entitlement_then_zero_quota(user_id):
        record = real_get(user_id)
        calls["n"] += 1
        if calls["n"] == 1:
            store.override_entitlement(
                user_id,
                tier=record.subscription_tier,
                expires_at=None,
                free_contacts_remaining=0,
                free_contacts_reset_at=NOW,
            )
            commit(store)
        return record

    store.get_entitlement = get_entitlement_then_zero_quota  # type: ignore[method-assign]

    result = service.unlock(tenant.id, listing.id)

    store.get_entitlement = real_get  # type: ignore[method-assign]
    assert result.outcome is UnlockOutcome.DENIED
    assert calls["n"] == 2
    assert real_get(tenant.id).free_contacts_remaining == 0

import threading
from datetime import datetime, timedelta, timezone

import pytest

from database import ADMIN_SEED, MemoryStorage
from errors import Conflict, TooManyRequests
from schemas import AddressCreate

PHONE = "+919876543210"


def address(**overrides):
    data = {"label": "Home", "address_line1": "12 FC Road", "city": "Pune",
            "state": "Maharashtra", "pincode": "411004"}
    data.update(overrides)
    return AddressCreate(**data)


def test_seeded_once(make_storage):
    storage = make_storage()
    admin = storage.get_user_by_phone(ADMIN_SEED["phone"])
    assert admin.is_admin and admin.name == "Admin User"
    assert storage.count_products() == 4

    storage.seed()
    assert storage.count_users() == 1
    assert storage.count_products() == 4


def test_unseeded_store_is_empty(make_storage):
    storage = make_storage(seed=False)
    assert storage.count_users() == 0
    assert storage.list_products() == []


def test_duplicate_phone_conflicts(make_storage):
    storage = make_storage(seed=False)
    storage.create_user(PHONE)
    with pytest.raises(Conflict):
        storage.create_user(PHONE)


def test_returned_models_are_copies(make_storage):
    storage = make_storage(seed=False)
    user = storage.create_user(PHONE)
    user.is_admin = True
    assert storage.get_user(user.id).is_admin is False


def test_timestamps_are_utc(make_storage):
    storage = make_storage(seed=False)
    user = storage.issue_otp(PHONE, "123456", datetime.now(timezone.utc) + timedelta(minutes=10))
    assert user.created_at.tzinfo is not None
    assert user.otp_expires_at.tzinfo is not None


def test_verify_and_clear_otp(make_storage):
    storage = make_storage(seed=False)
    now = datetime.now(timezone.utc)
    storage.issue_otp(PHONE, "123456", now + timedelta(minutes=10), now=now)

    assert storage.verify_and_clear_otp(PHONE, "654321", now) is None
    assert storage.get_user_by_phone(PHONE).otp_code == "123456"

    assert storage.verify_and_clear_otp(PHONE, "123456", now + timedelta(minutes=10)) is None

    user = storage.verify_and_clear_otp(PHONE, "123456", now)
    assert user is not None and user.otp_code is None
    assert user.otp_attempts == 0 and user.otp_failures == 0
    assert storage.verify_and_clear_otp(PHONE, "123456", now) is None


def test_wrong_guesses_void_the_code(make_storage):
    storage = make_storage(seed=False)
    now = datetime.now(timezone.utc)
    storage.issue_otp(PHONE, "123456", now + timedelta(minutes=10), now=now)

    for _ in range(2):
        assert storage.verify_and_clear_otp(PHONE, "000000", now, max_failures=3) is None
    user = storage.get_user_by_phone(PHONE)
    assert user.otp_code == "123456" and user.otp_failures == 2

    assert storage.verify_and_clear_otp(PHONE, "000000", now, max_failures=3) is None
    assert storage.get_user_by_phone(PHONE).otp_code is None
    assert storage.verify_and_clear_otp(PHONE, "123456", now, max_failures=3) is None


def test_new_code_resets_failures(make_storage):
    storage = make_storage(seed=False)
    now = datetime.now(timezone.utc)
    storage.issue_otp(PHONE, "123456", now + timedelta(minutes=10), now=now)
    storage.verify_and_clear_otp(PHONE, "000000", now, max_failures=2)
    storage.verify_and_clear_otp(PHONE, "000000", now, max_failures=2)

    storage.issue_otp(PHONE, "222222", now + timedelta(minutes=10), now=now)
    assert storage.get_user_by_phone(PHONE).otp_failures == 0
    assert storage.verify_and_clear_otp(PHONE, "222222", now, max_failures=2) is not None


def test_issue_is_throttled_while_code_is_live(make_storage):
    storage = make_storage(seed=False)
    now = datetime.now(timezone.utc)
    for i in range(3):
        storage.issue_otp(PHONE, f"00000{i}", now + timedelta(minutes=10), now=now, max_requests=3)

    with pytest.raises(TooManyRequests):
        storage.issue_otp(PHONE, "999999", now + timedelta(minutes=10), now=now, max_requests=3)
    assert storage.get_user_by_phone(PHONE).otp_code == "000002"

    later = now + timedelta(minutes=11)
    user = storage.issue_otp(PHONE, "999999", later + timedelta(minutes=10), now=later, max_requests=3)
    assert user.otp_code == "999999" and user.otp_attempts == 4


def test_concurrent_verification_succeeds_once():
    storage = MemoryStorage(seed=False)
    now = datetime.now(timezone.utc)
    storage.issue_otp(PHONE, "123456", now + timedelta(minutes=10))

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(storage.verify_and_clear_otp(PHONE, "123456", now)))
        for _ in range(16)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1


def test_concurrent_wrong_guesses_cannot_exceed_limit():
    storage = MemoryStorage(seed=False)
    now = datetime.now(timezone.utc)
    storage.issue_otp(PHONE, "123456", now + timedelta(minutes=10))

    threads = [
        threading.Thread(target=storage.verify_and_clear_otp, args=(PHONE, f"{i:06d}", now))
        for i in range(200, 232)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    user = storage.get_user_by_phone(PHONE)
    assert user.otp_failures == 5
    assert user.otp_code is None


def test_concurrent_defaults_leave_at_most_one():
    storage = MemoryStorage(seed=False)
    user = storage.create_user(PHONE)
    ids = [storage.create_address(user.id, address(label=f"A{i}")).id for i in range(8)]

    def make_default(address_id):
        for _ in range(25):
            storage.set_default_address(user.id, address_id)
            storage.update_address(address_id, {"is_default": True})
            storage.create_address(user.id, address(is_default=True))

    threads = [threading.Thread(target=make_default, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for a in storage.list_addresses(user.id) if a.is_default) == 1


def test_set_default_rejects_foreign_address(make_storage):
    storage = make_storage(seed=False)
    owner = storage.create_user(PHONE)
    other = storage.create_user("+919812345678")
    home = storage.create_address(owner.id, address(is_default=True))

    assert storage.set_default_address(other.id, home.id) is None
    assert storage.get_address(home.id).is_default is True


def test_list_addresses_puts_default_first(make_storage):
    storage = make_storage(seed=False)
    user = storage.create_user(PHONE)
    first = storage.create_address(user.id, address(label="First", is_default=True))
    second = storage.create_address(user.id, address(label="Second"))
    third = storage.create_address(user.id, address(label="Third"))

    assert [a.id for a in storage.list_addresses(user.id)] == [first.id, third.id, second.id]


def test_orders_by_status(make_storage):
    storage = make_storage(seed=False)
    counts = storage.count_orders_by_status()
    assert set(counts) == {"pending", "confirmed", "packed", "shipped", "delivered", "cancelled"}
    assert all(v == 0 for v in counts.values())


def test_health_counts_collections(make_storage):
    storage = make_storage()
    health = storage.health()
    assert health["connection_status"] == "Connected"
    assert health["collections"]["user"] == 1
    assert health["collections"]["product"] == 4

"""
Tests for the prekey directory service and its HTTP client.
"""

import asyncio

import httpx
import pytest

from chat_client.api import DirectoryClient, DirectoryError, OneTimePrekeyPayload, RegisterPayload
from chat_client.device_state import DeviceStateStore
from chat_client.session import DecryptContext, E2EESession
from chat_client.storage import IntegrityStorage, MemoryDriver
from directory.auth import create_access_token, verify_token
from directory.database import Database
from directory.main import app, get_database

BASE_URL = "http://directory.test"


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}")
    app.dependency_overrides[get_database] = lambda: db
    yield db
    app.dependency_overrides.clear()


def client_for(user_id: int) -> DirectoryClient:
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    return DirectoryClient(base_url=BASE_URL, token=create_access_token(user_id), http_client=http)


def registration(device_id: str, prekeys=("pk-1", "pk-2", "pk-3")) -> RegisterPayload:
    return RegisterPayload(
        device_id=device_id,
        name="test",
        platform="linux",
        identity_key_pub="identity",
        signed_prekey_pub="signed",
        signed_prekey_sig="sig",
        one_time_prekeys=[OneTimePrekeyPayload(prekey_id=i, prekey_pub=pub) for i, pub in enumerate(prekeys)],
    )


def test_token_round_trip():
    assert verify_token(create_access_token(42)) == 42
    assert verify_token("not-a-token") is None


def test_register_list_claim_and_stock(database):
    async def scenario():
        await database.create_tables()
        alice = client_for(1)
        bob = client_for(2)

        await alice.register_device(registration("dev-a"))
        assert await alice.get_prekey_stock("dev-a") == 3

        bundles = await bob.list_device_bundles(1)
        assert [b.device_id for b in bundles] == ["dev-a"]
        assert bundles[0].signed_prekey_sig == "sig"
        assert bundles[0].one_time_prekey_pub is None
        assert await bob.list_device_bundles(99) == []

        claimed = [await bob.claim_prekey(1, "dev-a") for _ in range(4)]
        assert [b.one_time_prekey_pub for b in claimed] == ["pk-1", "pk-2", "pk-3", None]
        assert claimed[3].signed_prekey_pub == "signed"
        assert await alice.get_prekey_stock("dev-a") == 0

        # Duplicates and already claimed keys are not restocked
        await alice.upload_prekeys("dev-a", [
            OneTimePrekeyPayload(prekey_pub="pk-1"),
            OneTimePrekeyPayload(prekey_pub="pk-4"),
            OneTimePrekeyPayload(prekey_pub="pk-4"),
        ])
        assert await alice.get_prekey_stock("dev-a") == 1

        await alice.aclose()
        await bob.aclose()
        await database.dispose()

    asyncio.run(scenario())


def test_concurrent_claims_never_share_a_key(database):
    async def scenario():
        await database.create_tables()
        alice = client_for(1)
        await alice.register_device(registration("dev-a"))

        claimers = [client_for(n) for n in range(2, 7)]
        bundles = await asyncio.gather(*(c.claim_prekey(1, "dev-a") for c in claimers))

        served = [b.one_time_prekey_pub for b in bundles if b.one_time_prekey_pub]
        assert sorted(served) == ["pk-1", "pk-2", "pk-3"]

        for c in [alice, *claimers]:
            await c.aclose()
        await database.dispose()

    asyncio.run(scenario())


def test_foreign_device_is_rejected(database):
    async def scenario():
        await database.create_tables()
        alice = client_for(1)
        mallory = client_for(3)
        await alice.register_device(registration("dev-a"))

        with pytest.raises(DirectoryError, match="403"):
            await mallory.upload_prekeys("dev-a", [OneTimePrekeyPayload(prekey_pub="evil")])
        with pytest.raises(DirectoryError, match="403"):
            await mallory.register_device(registration("dev-a", prekeys=()))
        with pytest.raises(DirectoryError, match="403"):
            await mallory.get_prekey_stock("dev-a")
        with pytest.raises(DirectoryError, match="404"):
            await mallory.claim_prekey(1, "dev-missing")
        with pytest.raises(DirectoryError, match="404"):
            await mallory.claim_prekey(3, "dev-a")

        await alice.aclose()
        await mallory.aclose()
        await database.dispose()

    asyncio.run(scenario())


def test_requests_without_token_are_unauthorized(database):
    async def scenario():
        await database.create_tables()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL) as http:
            response = await http.get("/api/e2ee/users/1/devices")
            assert response.status_code == 401
            response = await http.get(
                "/api/e2ee/users/1/devices", headers={"Authorization": "Bearer garbage"}
            )
            assert response.status_code == 401
        await database.dispose()

    asyncio.run(scenario())


def test_sessions_exchange_messages_through_directory(database):
    async def scenario():
        await database.create_tables()
        alice_directory = client_for(1)
        bob_directory = client_for(2)
        alice = await E2EESession.bootstrap(DeviceStateStore(IntegrityStorage(MemoryDriver())), alice_directory)
        bob = await E2EESession.bootstrap(DeviceStateStore(IntegrityStorage(MemoryDriver())), bob_directory)
        assert await bob_directory.get_prekey_stock(bob.device_id) == 10

        result = await alice.encrypt_for_user(2, "m-http", "over the wire")
        assert result.envelope.uses_one_time_prekey()

        plaintext = await bob.decrypt_envelope(
            result.envelope, context=DecryptContext(sender_id=1, sender_device_id=alice.device_id)
        )
        assert plaintext == "over the wire"
        assert await bob_directory.get_prekey_stock(bob.device_id) == 9

        await alice_directory.aclose()
        await bob_directory.aclose()
        await database.dispose()

    asyncio.run(scenario())

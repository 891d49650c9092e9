import asyncio
import sys
from dataclasses import replace
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[2]))

import pytest

from companion.services.conversation import ASSISTANT, USER, ConversationStore, clamp_limit
from companion.services.errors import IntegrityError
from companion.services.identity import guest_identity, hash_token, registered_identity
from companion.services.ledger import UsageLedger, utc_date_key
from companion.services.store import MemoryStore, SqlStore

KEY = b"K" * 32


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SqlStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")


async def new_account(store, name="Asha", **kwargs):
    await store.initialize()
    account = await store.create_account(name=name, token_hash=hash_token(name), **kwargs)
    return registered_identity(account)


@pytest.mark.asyncio
async def test_mode_counts_are_partitioned_by_mode(store):
    identity = await new_account(store)
    ledger = UsageLedger(store)

    assert await ledger.get_mode_count(identity, "Lovely") == 0
    assert await ledger.increment_mode_count(identity, "Lovely") == 1
    assert await ledger.increment_mode_count(identity, "Lovely") == 2
    assert await ledger.get_mode_count(identity, "Lovely") == 2
    assert await ledger.get_mode_count(identity, "Horror") == 0
    await store.close()


@pytest.mark.asyncio
async def test_concurrent_increments_do_not_lose_updates(store):
    identity = await new_account(store)
    ledger = UsageLedger(store)
    await ledger.increment_mode_count(identity, "Chill")

    await asyncio.gather(*[ledger.increment_mode_count(identity, "Chill") for _ in range(10)])

    assert await ledger.get_mode_count(identity, "Chill") == 11
    await store.close()


@pytest.mark.asyncio
async def test_guest_usage_keyed_by_fingerprint(store):
    await store.initialize()
    ledger = UsageLedger(store)
    guest = guest_identity({"user-agent": "pytest"}, client_host="1.1.1.1")

    await ledger.increment_mode_count(guest, "Lovely")
    record = await store.find_usage(guest.key, "Lovely")
    assert record.message_count == 1
    assert record.metadata["ip_hash"] == guest.metadata["ip_hash"]
    await store.close()


@pytest.mark.asyncio
async def test_voice_seconds_reset_on_new_day(store):
    identity = await new_account(store)
    ledger = UsageLedger(store)

    assert await ledger.add_voice_seconds(identity, "2026-01-01", 60) == 60
    assert await ledger.add_voice_seconds(identity, "2026-01-01", 30) == 90
    assert await ledger.get_voice_seconds_used(identity, "2026-01-01") == 90
    assert await ledger.get_voice_seconds_used(identity, "2026-01-02") == 0
    assert await ledger.add_voice_seconds(identity, "2026-01-02", 20) == 20
    await store.close()


def test_utc_date_key_format():
    key = utc_date_key()
    assert len(key) == 10 and key[4] == "-" and key[7] == "-"


def test_clamp_limit_bounds():
    assert clamp_limit(0) == 1
    assert clamp_limit(500) == 200
    assert clamp_limit("bad") == 40


@pytest.mark.asyncio
async def test_history_is_encrypted_and_ordered(store):
    identity = await new_account(store)
    conversation = ConversationStore(store, KEY)

    first = await conversation.append(identity, "Lovely", USER, "hello")
    await conversation.append(identity, "Lovely", ASSISTANT, "hi back", image_url="https://img/1.png")
    await conversation.append(identity, "Horror", USER, "boo")

    history = await conversation.recent_history(identity, "Lovely", 10)
    assert [t.text for t in history] == ["hello", "hi back"]
    assert history[0].id == first.id
    assert history[1].to_dict()["imageUrl"] == "https://img/1.png"
    assert "imageUrl" not in history[0].to_dict()

    records = await store.list_recent_turns(identity.owner_id, "Lovely", 10)
    assert all("hello" not in r.payload.cipher_text for r in records)
    await store.close()


@pytest.mark.asyncio
async def test_recent_history_keeps_newest_turns(store):
    identity = await new_account(store)
    conversation = ConversationStore(store, KEY)
    for i in range(5):
        await conversation.append(identity, "Chill", USER, f"m{i}")

    history = await conversation.recent_history(identity, "Chill", 2)
    assert [t.text for t in history] == ["m3", "m4"]
    await store.close()


@pytest.mark.asyncio
async def test_fetch_by_ids_newest_first_and_empty_input(store):
    identity = await new_account(store)
    conversation = ConversationStore(store, KEY)
    a = await conversation.append(identity, "Chill", USER, "a")
    b = await conversation.append(identity, "Chill", ASSISTANT, "b")

    turns = await conversation.fetch_by_ids(identity, [a.id, b.id])
    assert [t.text for t in turns] == ["b", "a"]
    assert await conversation.fetch_by_ids(identity, []) == []
    await store.close()


@pytest.mark.asyncio
async def test_delete_all_leaves_usage_untouched(store):
    identity = await new_account(store)
    conversation = ConversationStore(store, KEY)
    ledger = UsageLedger(store)
    await conversation.append(identity, "Mystic", USER, "x")
    await conversation.append(identity, "Mystic", ASSISTANT, "y")
    await ledger.increment_mode_count(identity, "Mystic")

    assert await conversation.delete_all(identity, "Mystic") == 2
    assert await conversation.recent_history(identity, "Mystic", 10) == []
    assert await ledger.get_mode_count(identity, "Mystic") == 1
    await store.close()


@pytest.mark.asyncio
async def test_other_owner_cannot_decrypt(store):
    alice = await new_account(store, "alice")
    bob = registered_identity(await store.create_account(name="bob", token_hash=hash_token("bob")))
    conversation = ConversationStore(store, KEY)
    await conversation.append(alice, "Lovely", USER, "private")

    record = (await store.list_recent_turns(alice.owner_id, "Lovely", 1))[0]
    with pytest.raises(IntegrityError):
        conversation.decrypt_record(bob, replace(record, owner_id=bob.owner_id))
    await store.close()


@pytest.mark.asyncio
async def test_latest_across_owners_spans_owners_and_modes(store):
    asha = await new_account(store)
    ravi = registered_identity(await store.create_account(name="Ravi", token_hash=hash_token("Ravi")))
    conversation = ConversationStore(store, KEY)
    await conversation.append(asha, "Lovely", USER, "one")
    await conversation.append(ravi, "Chill", USER, "two")
    await conversation.append(asha, "Horror", ASSISTANT, "three")

    turns = await conversation.latest_across_owners(2)

    assert [t.text for t in turns] == ["two", "three"]
    await store.close()

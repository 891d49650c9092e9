import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[2]))
import httpx
import pytest

from companion.services import memory as memory_module
from companion.services.conversation import ASSISTANT, USER, ConversationStore
from companion.services.errors import StorageError
from companion.services.identity import hash_token, registered_identity
from companion.services.memory import MemoryAugmenter, PineconeIndex, namespace_for
from companion.services.providers import ProviderFailure
from companion.services.store import MemoryStore

KEY = b"M" * 32


class FakeEmbedder:
    configured = True

    def __init__(self, result=None):
        self.result = result if result is not None else [0.5, 0.25]
        self.texts = []

    async def embed(self, text):
        self.texts.append(text)
        return self.result


class FakeIndex:
    configured = True

    def __init__(self, matches=None, error=None):
        self.matches = matches or []
        self.error = error
        self.upserts = []
        self.queries = []

    async def query(self, namespace, values, top_k=4, filter=None):
        self.queries.append({"namespace": namespace, "top_k": top_k, "filter": filter})
        if self.error:
            raise self.error
        return self.matches

    async def upsert(self, namespace, vector_id, values, metadata):
        if self.error:
            raise self.error
        self.upserts.append({"namespace": namespace, "id": vector_id, "metadata": metadata})


async def setup():
    store = MemoryStore()
    account = await store.create_account(name="Prem", token_hash=hash_token("p"), tier="Premium")
    identity = registered_identity(account)
    conversation = ConversationStore(store, KEY)
    first = await conversation.append(identity, "Lovely", USER, "I love chai", with_vector=True)
    second = await conversation.append(identity, "Lovely", ASSISTANT, "Chai it is", with_vector=True)
    return store, identity, conversation, first, second


@pytest.mark.asyncio
async def test_augment_returns_role_lines_scoped_to_owner_and_mode():
    store, identity, conversation, first, second = await setup()
    index = FakeIndex(matches=[{"id": first.vector_id, "metadata": {"turn_id": first.id}},
                               {"id": second.vector_id, "metadata": {"turn_id": second.id}}])
    augmenter = MemoryAugmenter(index, FakeEmbedder(), conversation)

    lines = await augmenter.augment(identity, "Lovely", "what do I drink?", True)

    assert lines == ["assistant: Chai it is", "user: I love chai"]
    assert index.queries[0]["namespace"] == namespace_for(identity.owner_id)
    assert index.queries[0]["filter"] == {"mode": {"$eq": "Lovely"}}
    assert index.queries[0]["top_k"] == 4


@pytest.mark.asyncio
async def test_augment_is_noop_for_limited_callers():
    _, identity, conversation, first, _ = await setup()
    embedder = FakeEmbedder()
    augmenter = MemoryAugmenter(FakeIndex(matches=[{"metadata": {"turn_id": first.id}}]), embedder, conversation)
    assert await augmenter.augment(identity, "Lovely", "hi", False) == []
    assert embedder.texts == []


@pytest.mark.asyncio
async def test_augment_returns_empty_on_embedding_failure():
    _, identity, conversation, _, _ = await setup()
    embedder = FakeEmbedder(ProviderFailure("gemini", 429, "rate_limited", "slow down"))
    augmenter = MemoryAugmenter(FakeIndex(), embedder, conversation)
    assert await augmenter.augment(identity, "Lovely", "hi", True) == []


@pytest.mark.asyncio
async def test_augment_returns_empty_on_index_failure():
    _, identity, conversation, _, _ = await setup()
    augmenter = MemoryAugmenter(FakeIndex(error=httpx.ConnectError("down")), FakeEmbedder(), conversation)
    assert await augmenter.augment(identity, "Lovely", "hi", True) == []


@pytest.mark.asyncio
async def test_augment_skips_records_that_fail_to_decrypt():
    store, identity, conversation, first, second = await setup()
    broken = ConversationStore(store, b"X" * 32)
    await broken.append(identity, "Lovely", USER, "other key")
    bad_id = store.turns[-1].id
    index = FakeIndex(matches=[{"metadata": {"turn_id": bad_id}}, {"metadata": {"turn_id": first.id}}])
    augmenter = MemoryAugmenter(index, FakeEmbedder(), conversation)

    assert await augmenter.augment(identity, "Lovely", "chai?", True) == ["user: I love chai"]


@pytest.mark.asyncio
async def test_remember_upserts_with_turn_metadata():
    _, identity, conversation, first, _ = await setup()
    index = FakeIndex()
    augmenter = MemoryAugmenter(index, FakeEmbedder(), conversation)

    assert await augmenter.remember(identity, "Lovely", first.id, first.text, first.vector_id) is True
    upsert = index.upserts[0]
    assert upsert["id"] == first.vector_id
    assert upsert["namespace"] == f"user-{identity.owner_id}"
    assert upsert["metadata"]["mode"] == "Lovely"
    assert upsert["metadata"]["turn_id"] == first.id


class DummyResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class DummyClient:
    calls = []
    payload = {"matches": [{"id": "v1", "metadata": {"turn_id": "3"}}]}

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        pass

    async def post(self, url, json, headers):
        DummyClient.calls.append((url, json, headers))
        return DummyResponse(DummyClient.payload)


@pytest.mark.asyncio
async def test_pinecone_index_query_request(monkeypatch):
    DummyClient.calls = []
    monkeypatch.setattr(memory_module.httpx, "AsyncClient", DummyClient)
    index = PineconeIndex("pc-key", "my-index.svc.pinecone.io")

    matches = await index.query("user-1", [0.1], top_k=4, filter={"mode": {"$eq": "Chill"}})

    url, body, headers = DummyClient.calls[0]
    assert url == "https://my-index.svc.pinecone.io/query"
    assert headers == {"Api-Key": "pc-key"}
    assert body["namespace"] == "user-1"
    assert body["topK"] == 4
    assert matches[0]["metadata"]["turn_id"] == "3"


@pytest.mark.asyncio
async def test_augment_returns_empty_on_unreadable_index_body(monkeypatch):
    _, identity, conversation, _, _ = await setup()
    monkeypatch.setattr(memory_module.httpx, "AsyncClient", DummyClient)
    monkeypatch.setattr(DummyClient, "payload", ValueError("not json"))
    augmenter = MemoryAugmenter(PineconeIndex("pc-key", "idx.pinecone.io"), FakeEmbedder(), conversation)

    assert await augmenter.augment(identity, "Lovely", "hi", True) == []


@pytest.mark.asyncio
async def test_augment_returns_empty_on_storage_failure(monkeypatch):
    _, identity, conversation, first, _ = await setup()

    async def broken_fetch(*args, **kwargs):
        raise StorageError("database is locked")

    monkeypatch.setattr(conversation, "fetch_records", broken_fetch)
    index = FakeIndex(matches=[{"metadata": {"turn_id": first.id}}])
    augmenter = MemoryAugmenter(index, FakeEmbedder(), conversation)

    assert await augmenter.augment(identity, "Lovely", "chai?", True) == []

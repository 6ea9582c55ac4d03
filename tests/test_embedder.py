import json

import httpx
import numpy as np
import pytest

from code_context_index.core.errors import EmbeddingBackendError
from code_context_index.embeddings.embedder import HttpEmbedder, LocalEmbedder


def _transport(handler):
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_http_embed_batches_and_orders_by_index():
    requests = []

    def handler(request):
        body = json.loads(request.content)
        requests.append(body)
        # Reply out of order; the embedder sorts by "index"
        data = [
            {"index": i, "embedding": [float(len(text)), float(i)]}
            for i, text in enumerate(body["input"])
        ]
        return httpx.Response(200, json={"data": list(reversed(data))})

    embedder = HttpEmbedder(
        api_key="k",
        model="m",
        base_url="http://embed.test/v1/embeddings",
        transport=_transport(handler),
    )
    vectors = await embedder.embed(["a", "bb", "ccc"], batch_size=2)

    assert vectors == [[1.0, 0.0], [2.0, 1.0], [3.0, 0.0]]
    assert [r["input"] for r in requests] == [["a", "bb"], ["ccc"]]
    assert requests[0]["model"] == "m"


@pytest.mark.asyncio
async def test_http_error_raises_backend_error():
    embedder = HttpEmbedder(
        api_key="k",
        base_url="http://embed.test/v1/embeddings",
        transport=_transport(lambda request: httpx.Response(500, json={})),
    )
    with pytest.raises(EmbeddingBackendError):
        await embedder.embed_one("x")


@pytest.mark.asyncio
async def test_count_mismatch_raises():
    embedder = HttpEmbedder(
        api_key="k",
        base_url="http://embed.test/v1/embeddings",
        transport=_transport(lambda request: httpx.Response(200, json={"data": []})),
    )
    with pytest.raises(EmbeddingBackendError, match="Expected 1 embeddings"):
        await embedder.embed(["x"])


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"data": "nope"},
        {"data": [{"vector": [1.0]}]},
        {"data": [{"embedding": ["a"]}]},
        {"data": [{"embedding": []}]},
    ],
)
def test_malformed_responses_rejected(payload):
    with pytest.raises(EmbeddingBackendError):
        HttpEmbedder._extract_embeddings(payload)


class FakeSentenceModel:
    def encode(self, text, output_value=None, convert_to_numpy=False):
        if output_value == "token_embeddings":
            return np.array([[3.0, 0.0], [1.0, 2.0]])
        return np.array([0.0, 5.0])


def _local(pooling, normalize):
    embedder = LocalEmbedder(model="fake", model_base_path="/tmp/models", pooling=pooling, normalize=normalize)
    embedder._model = FakeSentenceModel()
    return embedder


def test_local_mean_pooling():
    assert _local("mean", normalize=False).embed_one("x") == pytest.approx([2.0, 1.0])


def test_local_cls_pooling_normalized():
    assert _local("cls", normalize=True).embed_one("x") == pytest.approx([1.0, 0.0])


def test_local_model_pooling():
    assert _local("none", normalize=True).embed("x y".split()) == [pytest.approx([0.0, 1.0])] * 2

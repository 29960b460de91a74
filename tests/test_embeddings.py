"""Tests for the embedding service and vector math."""
import asyncio

import numpy as np
import pytest

from cortex.embeddings import EmbeddingService, cosine_similarity
from cortex.errors import EmbeddingUnavailableError

from conftest import DIM, fake_encode


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestEmbeddingService:
    """Custom-encoder backend, caching and failure handling."""

    @pytest.mark.asyncio
    async def test_embed_returns_unit_vector(self, embedder):
        vec = await embedder.embed("User prefers dark mode")
        assert len(vec) == DIM
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)
        assert embedder.ready
        assert embedder.backend == "custom"

    @pytest.mark.asyncio
    async def test_similar_texts_score_high(self, embedder):
        a, b = await embedder.embed_batch(["User prefers dark mode", "dark mode preference"])
        assert cosine_similarity(a, b) > 0.6

    @pytest.mark.asyncio
    async def test_cache_avoids_reencoding(self):
        calls = []

        def counting(texts):
            calls.append(list(texts))
            return fake_encode(texts)

        svc = EmbeddingService(encoder=counting)
        try:
            first = await svc.embed("cached text")
            second = await svc.embed("cached text")
            assert first == second
            assert calls == [["cached text"]]
            await svc.embed_batch(["cached text", "new text"])
            assert calls[-1] == ["new text"]
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        svc = EmbeddingService(encoder=fake_encode, cache_size=2)
        try:
            await svc.embed_batch(["one", "two", "three"])
            assert svc.info()["cache_size"] == 2
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_empty_batch(self, embedder):
        assert await embedder.embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_disabled_raises(self):
        svc = EmbeddingService(enabled=False, encoder=fake_encode)
        with pytest.raises(EmbeddingUnavailableError):
            await svc.embed("anything")

    @pytest.mark.asyncio
    async def test_wrong_shape_raises(self):
        svc = EmbeddingService(encoder=lambda texts: np.ones((len(texts), 10)))
        try:
            with pytest.raises(EmbeddingUnavailableError):
                await svc.embed("anything")
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_encoder_exception_wrapped(self):
        def broken(texts):
            raise RuntimeError("model exploded")

        svc = EmbeddingService(encoder=broken)
        try:
            with pytest.raises(EmbeddingUnavailableError):
                await svc.embed("anything")
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_concurrent_init_loads_once(self):
        svc = EmbeddingService(encoder=fake_encode)
        loads = []
        original = svc._load_backend

        def counting_load():
            loads.append(1)
            return original()

        svc._load_backend = counting_load
        try:
            await asyncio.gather(*(svc.embed(f"text {i}") for i in range(5)))
            assert len(loads) == 1
        finally:
            svc.close()

    @pytest.mark.asyncio
    async def test_circuit_breaker_stops_retrying(self):
        svc = EmbeddingService()
        loads = []

        def failing_load():
            loads.append(1)
            raise EmbeddingUnavailableError("no backend")

        svc._load_backend = failing_load
        try:
            for _ in range(3):
                with pytest.raises(EmbeddingUnavailableError):
                    await svc.init()
            with pytest.raises(EmbeddingUnavailableError, match="cooldown"):
                await svc.init()
            assert len(loads) == 3

            svc.reset()
            with pytest.raises(EmbeddingUnavailableError):
                await svc.init()
            assert len(loads) == 4
        finally:
            svc.close()

    def test_info(self, embedder):
        info = embedder.info()
        assert info["enabled"] is True
        assert info["dimension"] == DIM
        assert info["model_loaded"] is False

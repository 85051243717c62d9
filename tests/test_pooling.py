"""Tests for mean pooling and normalization."""
import numpy as np
import pytest

from embedding_gemma.exceptions import InvalidInputError
from embedding_gemma.services.pooling import (
    l2_normalize,
    mean_pool,
    pool,
    truncate_dimension,
)


class TestMeanPool:
    def test_averages_attended_positions_only(self):
        hidden = np.array(
            [[[1.0, 2.0], [3.0, 4.0], [100.0, 100.0]]], dtype=np.float32
        )
        mask = np.array([[1, 1, 0]])
        np.testing.assert_allclose(mean_pool(hidden, mask), [[2.0, 3.0]])

    def test_padding_nan_does_not_leak(self):
        hidden = np.array([[[1.0, 1.0], [np.nan, np.inf]]], dtype=np.float32)
        mask = np.array([[1, 0]])
        pooled = mean_pool(hidden, mask)
        assert np.isfinite(pooled).all()
        np.testing.assert_allclose(pooled, [[1.0, 1.0]])

    def test_no_attended_positions_gives_zero(self):
        hidden = np.ones((1, 3, 4), dtype=np.float32)
        mask = np.zeros((1, 3), dtype=np.int64)
        np.testing.assert_array_equal(mean_pool(hidden, mask), np.zeros((1, 4)))

    def test_returns_float32(self):
        hidden = np.ones((2, 3, 4), dtype=np.float16)
        mask = np.ones((2, 3), dtype=np.int64)
        assert mean_pool(hidden, mask).dtype == np.float32

    def test_padding_amount_does_not_change_result(self):
        rng = np.random.default_rng(0)
        tokens = rng.standard_normal((3, 8)).astype(np.float32)

        short = mean_pool(tokens[None], np.ones((1, 3)))
        padded = np.concatenate([tokens, rng.standard_normal((5, 8))]).astype(
            np.float32
        )
        long = mean_pool(padded[None], np.array([[1, 1, 1, 0, 0, 0, 0, 0]]))
        np.testing.assert_allclose(short, long, rtol=1e-6)

    def test_shape_mismatch(self):
        with pytest.raises(InvalidInputError):
            mean_pool(np.ones((2, 3, 4)), np.ones((2, 4)))

    def test_single_input_form(self):
        hidden = np.array([[2.0, 0.0], [4.0, 2.0]], dtype=np.float32)
        np.testing.assert_allclose(pool(hidden, np.array([1, 1])), [3.0, 1.0])


class TestNormalize:
    def test_unit_norm(self):
        vectors = np.array([[3.0, 4.0], [0.5, 0.0]])
        normalized = l2_normalize(vectors)
        np.testing.assert_allclose(np.linalg.norm(normalized, axis=1), [1.0, 1.0])
        np.testing.assert_allclose(normalized[0], [0.6, 0.8], rtol=1e-6)

    def test_zero_vector_stays_zero(self):
        normalized = l2_normalize(np.zeros((1, 5)))
        np.testing.assert_array_equal(normalized, np.zeros((1, 5)))

    def test_single_vector(self):
        np.testing.assert_allclose(l2_normalize(np.array([0.0, 2.0])), [0.0, 1.0])


class TestTruncateDimension:
    def test_prefix_renormalized(self):
        vectors = l2_normalize(np.array([[1.0, 1.0, 1.0, 1.0]]))
        truncated = truncate_dimension(vectors, 2)
        assert truncated.shape == (1, 2)
        np.testing.assert_allclose(np.linalg.norm(truncated, axis=1), [1.0])

    def test_full_dimension_unchanged(self):
        vectors = l2_normalize(np.array([[1.0, 2.0, 3.0]]))
        np.testing.assert_array_equal(truncate_dimension(vectors, 3), vectors)

    @pytest.mark.parametrize("dim", [0, 5])
    def test_out_of_range(self, dim):
        with pytest.raises(InvalidInputError):
            truncate_dimension(np.ones((1, 4)), dim)

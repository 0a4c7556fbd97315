"""Tests for correlation matrix construction and repair."""

import numpy as np
import pytest

from structpricer.market.correlation import (
    build_correlation_matrix,
    compute_cholesky,
    validate_and_fix_correlation,
)
from structpricer.market.market_data import MarketSnapshot


class TestCorrelation:

    def test_matrix_from_snapshot(self, market: MarketSnapshot) -> None:
        corr = build_correlation_matrix(["MSFT", "AAPL", "GOOGL"], market)
        assert corr[0, 1] == corr[1, 0] == pytest.approx(0.7)
        assert corr[1, 2] == pytest.approx(0.6)
        assert np.allclose(np.diag(corr), 1.0)

    def test_unknown_pair_is_uncorrelated(self, market: MarketSnapshot) -> None:
        bare = MarketSnapshot(as_of=market.as_of, underlyings=market.underlyings)
        corr = build_correlation_matrix(["AAPL", "MSFT"], bare)
        assert np.array_equal(corr, np.eye(2))

    def test_valid_matrix_untouched(self) -> None:
        corr = np.array([[1.0, 0.5], [0.5, 1.0]])
        warnings = []
        fixed = validate_and_fix_correlation(corr, warnings=warnings)
        assert np.allclose(fixed, corr)
        assert warnings == []

    def test_non_psd_repaired(self) -> None:
        corr = np.array([
            [1.0, 0.9, -0.9],
            [0.9, 1.0, 0.9],
            [-0.9, 0.9, 1.0],
        ])
        warnings = []
        fixed = validate_and_fix_correlation(corr, warnings=warnings)
        assert np.min(np.linalg.eigvalsh(fixed)) > -1e-10
        assert np.allclose(np.diag(fixed), 1.0)
        assert np.allclose(fixed, fixed.T)
        assert any("not PSD" in w for w in warnings)

    def test_cholesky_reproduces_matrix(self) -> None:
        corr = np.array([[1.0, 0.3, 0.2], [0.3, 1.0, 0.4], [0.2, 0.4, 1.0]])
        chol = compute_cholesky(corr)
        assert np.allclose(chol @ chol.T, corr, atol=1e-10)
        assert np.allclose(chol, np.tril(chol))

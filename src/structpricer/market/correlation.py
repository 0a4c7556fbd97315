"""
Correlation matrix construction for multi-asset simulation.

Builds the matrix from pairwise snapshot correlations, repairs it to be
positive semi-definite when needed, and returns its Cholesky factor.
"""

from typing import List, Sequence
import logging

import numpy as np

from structpricer.market.market_data import MarketSnapshot


logger = logging.getLogger(__name__)


def build_correlation_matrix(
    symbols: Sequence[str],
    market: MarketSnapshot
) -> np.ndarray:
    """
    Build correlation matrix for the given symbols in order.

    Returns:
        NxN correlation matrix
    """
    n = len(symbols)
    corr = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            rho = market.correlation(symbols[i], symbols[j])
            corr[i, j] = rho
            corr[j, i] = rho
    return corr


def validate_and_fix_correlation(
    corr: np.ndarray,
    epsilon: float = 1e-8,
    warnings: List[str] = None
) -> np.ndarray:
    """
    Validate correlation matrix is PSD and fix if needed.

    Uses eigenvalue clipping to ensure positive semi-definiteness.
    Any repair is logged and, when a list is supplied, recorded in it.
    """
    corr = np.array(corr, dtype=np.float64)

    def _note(message: str) -> None:
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)

    if not np.allclose(np.diag(corr), 1.0, atol=1e-6):
        _note(f"Correlation diagonal not all 1.0: {np.diag(corr)}")
        np.fill_diagonal(corr, 1.0)

    if not np.allclose(corr, corr.T, atol=1e-6):
        _note("Correlation matrix not symmetric, symmetrizing")
        corr = (corr + corr.T) / 2

    if np.any(np.abs(corr) > 1.0 + epsilon):
        _note("Correlation values outside [-1, 1], clipping")
        corr = np.clip(corr, -1.0, 1.0)
        np.fill_diagonal(corr, 1.0)

    eigenvalues, eigenvectors = np.linalg.eigh(corr)
    min_eigenvalue = float(np.min(eigenvalues))

    if min_eigenvalue < -epsilon:
        _note(
            f"Correlation matrix not PSD (min eigenvalue = {min_eigenvalue:.6f}), "
            f"clipping eigenvalues"
        )
        eigenvalues = np.maximum(eigenvalues, epsilon)
        corr = eigenvectors @ np.diag(eigenvalues) @ eigenvectors.T
        d = np.sqrt(np.diag(corr))
        corr = corr / np.outer(d, d)

    return corr


def compute_cholesky(corr: np.ndarray, warnings: List[str] = None) -> np.ndarray:
    """Compute Cholesky decomposition (lower triangular) of a repaired matrix."""
    corr = validate_and_fix_correlation(corr, warnings=warnings)
    # eigenvalue clipping can leave a matrix that is PSD but not PD
    corr = corr + np.eye(corr.shape[0]) * 1e-12
    return np.linalg.cholesky(corr)

"""Linear algebra routines for the imputation estimator.

This module provides QR solves with a Stata-style rank policy, weighted
cross-products, index-based group sums and the sparse factorisation of the
untreated normal equations used by the variance engine. Sparse inputs stay
sparse; explicit matrix inversion is avoided.
"""

from __future__ import annotations

# Standard library
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

# NumPy / SciPy
import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
import scipy.sparse.linalg as spla

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    Sequence = tuple  # type: ignore[assignment]
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

# Matrix type alias
Matrix = Any

# Mata qrsolve cutoff: eta = 1e-13 * trace(|R|) / rows(R)
_STATA_ETA_SCALE = 1e-13

__all__ = [
    "SparseNormalEquations",
    "crossprod",
    "factor_normal_equations",
    "gram",
    "group_sum",
    "hstack",
    "keep_columns_qr",
    "qr",
    "solve",
    "to_dense",
    "validate_weights",
    "xty",
]


def _assert_all_finite(*arrays: NDArray[np.float64]) -> None:
    """Raise ValueError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        _check_array_finiteness(np.asarray(a))


def _check_array_finiteness(arr: NDArray[np.float64]) -> None:
    """Helper to validate array finiteness with clear error message."""
    if not np.all(np.isfinite(arr)):
        raise ValueError(
            "Input contains NA/NaN/Inf; please drop/clean rows before estimation.",
        )


def _assert_all_finite_matrix(*matrices: Matrix) -> None:
    """Check dense or sparse matrices for non-finite entries."""
    for M in matrices:
        if M is None:
            continue
        if _is_sparse(M):
            # Only inspect the stored data array to avoid densification.
            _check_array_finiteness(np.asarray(M.data))
        else:
            _check_array_finiteness(np.asarray(M))


def _is_sparse(A: Matrix) -> bool:
    return sp.issparse(A)


def to_dense(A: Matrix, *, allow_densify: bool = True) -> NDArray[np.float64]:
    """Convert a matrix-like object to a dense float64 numpy array.

    Parameters
    ----------
    A : Matrix
        Input matrix which may be a numpy array or a SciPy sparse matrix.
    allow_densify : bool, default True
        When False, refuse to convert sparse inputs to dense and raise a
        RuntimeError. Panel-scale designs must never be densified.

    Returns
    -------
    ndarray
        Dense float64 numpy array.

    """
    if _is_sparse(A):
        if not allow_densify:
            msg = "to_dense: densification of sparse matrix is disabled; pass allow_densify=True to intentionally densify."
            raise RuntimeError(msg)
        return np.asarray(A.toarray(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def qr(A: Matrix, *, pivoting: bool = False, mode: str = "economic"):
    """Compute a (pivoted) QR decomposition of a dense or densified matrix."""
    Ad = to_dense(A)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode=mode, pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode=mode, pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def hstack(arrays: Sequence[Matrix]) -> Matrix:
    """Column-wise stack that preserves sparsity if any chunk is sparse."""
    if any(_is_sparse(A) for A in arrays):
        return sp.hstack(arrays, format="csr")
    return np.hstack([to_dense(A) for A in arrays])


def crossprod(X: Matrix, y: Matrix) -> NDArray[np.float64]:
    """Compute X'y as a dense two-dimensional array."""
    if isinstance(y, np.ndarray) and y.ndim == 1:
        y = y.reshape(-1, 1)
    out = X.T @ y
    if _is_sparse(out):
        out = out.toarray()
    out = np.asarray(out, dtype=np.float64)
    return out.reshape(-1, 1) if out.ndim == 1 else out


def _rank_tol(d: NDArray[np.float64], ncols: int, mode: str = "stata") -> float:
    if str(mode).lower() == "stata":
        return _STATA_ETA_SCALE * (float(np.sum(d)) / float(d.size))
    # numpy-like rcond style
    return np.finfo(float).eps * max(1, int(ncols)) * float(np.max(d))


def _rank_from_diag(diagR: NDArray[np.float64], ncols: int, mode: str = "stata") -> int:
    """Determine numerical rank from R diagonal entries using method-specific tolerance."""
    d = np.abs(np.asarray(diagR, dtype=float).reshape(-1))
    if d.size == 0:
        return 0
    return int(np.sum(d > _rank_tol(d, ncols, mode)))


def keep_columns_qr(A: Matrix, *, mode: str = "stata") -> NDArray[np.bool_]:
    """Boolean mask of columns kept by a QR collinearity screen.

    Columns are screened in their given order: the diagonal of the unpivoted
    ``R`` measures each column against the span of the columns before it, so
    of two collinear columns the later one is flagged ``False`` (the
    ``_rmcoll`` / fixest convention).
    """
    Ad = to_dense(A)
    keep = np.zeros(Ad.shape[1], dtype=bool)
    if Ad.shape[1] == 0 or Ad.shape[0] == 0:
        return keep
    _Q, R = qr(Ad, mode="economic", pivoting=False)
    diagR = np.zeros(Ad.shape[1], dtype=np.float64)
    d = np.abs(np.diag(R))
    diagR[: d.size] = d
    if float(np.max(diagR)) == 0.0:
        return keep
    keep[:] = diagR > _rank_tol(diagR, Ad.shape[1], mode)
    return keep


def _qr_ls_solve(
    Ad: NDArray[np.float64], Bd: NDArray[np.float64], *, mode: str = "stata",
) -> NDArray[np.float64]:
    """Solve least squares via pivoted QR."""
    Bd = Bd.reshape(-1, 1) if Bd.ndim == 1 else Bd
    Q, R, P = sla.qr(Ad, mode="economic", pivoting=True)
    r = _rank_from_diag(np.abs(np.diag(R)), Ad.shape[1], mode=mode)
    QtB = Q.T @ Bd
    out = np.zeros((Ad.shape[1], Bd.shape[1]), dtype=np.float64)
    if r > 0:
        out[P[:r], :] = sla.solve_triangular(R[:r, :r], QtB[:r, :], lower=False)
    return out


def solve(
    A: Matrix,
    B: Matrix,
    *,
    weights: Sequence[float] | None = None,
    method: str = "qr",
) -> NDArray[np.float64]:
    """Least-squares solve of ``A x = B`` with optional row weights.

    Weighted problems are solved on rows scaled by ``sqrt(w)`` so that no
    diagonal weight matrix is formed.
    """
    if method != "qr":
        raise ValueError("solve: method must be 'qr'")
    Ad = to_dense(A)
    Bd = to_dense(B)
    Bd = Bd.reshape(-1, 1) if Bd.ndim == 1 else Bd
    _assert_all_finite(Ad, Bd)
    if weights is not None:
        sw = np.sqrt(_validate_weights(weights, Ad.shape[0])).reshape(-1, 1)
        Ad = Ad * sw
        Bd = Bd * sw
    return _qr_ls_solve(Ad, Bd, mode="stata")


def gram(X: Matrix, weights: Sequence[float] | None) -> Matrix:
    """Compute A = X' W X with W = diag(w); if weights is None, W=I.

    Sparse inputs produce a sparse CSC result; dense inputs a dense array.
    """
    _assert_all_finite_matrix(X)
    if weights is None:
        if _is_sparse(X):
            return (X.T @ X).tocsc()
        Xd = to_dense(X)
        return Xd.T @ Xd
    w = _validate_weights(weights, X.shape[0], allow_empty=True)
    if _is_sparse(X):
        Xw = sp.diags(w) @ X
        return (X.T @ Xw).tocsc()
    Xd = to_dense(X)
    return Xd.T @ (Xd * w.reshape(-1, 1))


def xty(X: Matrix, y: Matrix, weights: Sequence[float] | None) -> NDArray[np.float64]:
    """Compute b = X' W y with W = diag(w); if weights is None, W=I."""
    yd = to_dense(y)
    if yd.ndim == 1:
        yd = yd.reshape(-1, 1)
    _assert_all_finite_matrix(X, yd)
    if weights is not None:
        w = _validate_weights(weights, X.shape[0], allow_empty=True)
        yd = yd * w.reshape(-1, 1)
    return crossprod(X, yd)


def _validate_weights(
    weights: Sequence[float],
    n: int,
    *,
    allow_zero: bool = True,
    allow_empty: bool = False,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,).

    Parameters
    ----------
    weights : Sequence[float]
        Weight values to validate.
    n : int
        Expected length.
    allow_zero : bool, default True
        Whether to allow zero weights.
    allow_empty : bool, default False
        Whether an all-zero weight vector is acceptable.

    Returns
    -------
    NDArray[np.float64]
        Validated weights as 1D array.

    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    if not allow_zero and np.any(w == 0):
        msg = "Zero weights not allowed (allow_zero=False)."
        raise ValueError(msg)
    if not allow_empty and float(np.sum(w)) <= 0.0:
        raise ValueError("weights must sum to a positive finite value")
    return w


def validate_weights(
    weights: Sequence[float], n: int, *, allow_empty: bool = False,
) -> NDArray[np.float64]:
    """Public wrapper: nonnegative finite weights of length ``n`` as float64."""
    return _validate_weights(weights, n, allow_empty=allow_empty)


def group_sum(
    X: Matrix, codes: Matrix, *, order: str = "sorted",
) -> NDArray[np.float64]:
    """Sum rows of X within groups defined by a single integer-like codes vector.

    Parameters
    ----------
    X : (n x p) matrix or length-n vector
    codes : (n,) integer-like labels

    Returns
    -------
    (G x p) dense float64 array of sums over groups ordered by sorted labels.

    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    codes_arr = np.asarray(codes).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    if order != "sorted":
        msg = "order must be 'sorted'"
        raise ValueError(msg)
    uniq, inv = np.unique(codes_arr, return_inverse=True)
    out = np.zeros((uniq.shape[0], Xd.shape[1]), dtype=np.float64)
    np.add.at(out, inv.reshape(-1), Xd)
    return out


# ---------------------------------------------------------------------
# Sparse normal equations
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class SparseNormalEquations:
    """Sparse LU factorisation of ``Z0' W0 Z0``.

    The factorisation is computed once and shared read-only; :meth:`solve`
    is safe to call from several threads.

    Attributes
    ----------
    gram : scipy.sparse.csc_matrix
        The normal-equations matrix.
    lu : scipy.sparse.linalg.SuperLU
        Its LU factorisation.
    rcond : float
        Ratio of smallest to largest absolute pivot of ``U``; a cheap proxy
        for the reciprocal condition number.
    """

    gram: Matrix
    lu: Any
    rcond: float
    rtol: float = 1e-6

    @property
    def k(self) -> int:
        return int(self.gram.shape[0])

    def solve(self, b: NDArray[np.float64]) -> NDArray[np.float64]:
        """Solve ``gram @ x = b``.

        Raises
        ------
        numpy.linalg.LinAlgError
            If the solution is non-finite or fails the relative residual check.
        """
        bd = np.asarray(b, dtype=np.float64).reshape(-1)
        if bd.shape[0] != self.k:
            raise ValueError("right-hand side length must match the normal equations")
        if not np.any(bd):
            return np.zeros(self.k, dtype=np.float64)
        x = self.lu.solve(bd)
        if not np.all(np.isfinite(x)):
            raise np.linalg.LinAlgError("normal equations solve produced non-finite values")
        resid = float(np.linalg.norm(self.gram @ x - bd))
        scale = float(np.linalg.norm(bd))
        if resid > self.rtol * max(scale, np.finfo(float).tiny):
            raise np.linalg.LinAlgError(
                f"normal equations solve failed the residual check "
                f"(relative residual {resid / scale:.3g})",
            )
        return x


def factor_normal_equations(
    Z0: Matrix,
    weights: Sequence[float] | None = None,
    *,
    rcond_tol: float | None = None,
) -> SparseNormalEquations:
    """Factorise ``Z0' W0 Z0`` without densifying it.

    Raises
    ------
    numpy.linalg.LinAlgError
        If the matrix is exactly singular or its pivot ratio falls below
        ``rcond_tol`` (default ``eps * k``).
    """
    Zc = sp.csr_matrix(Z0, dtype=np.float64)
    A = gram(Zc, weights)
    A = sp.csc_matrix(A)
    k = int(A.shape[0])
    if k == 0:
        raise np.linalg.LinAlgError("normal equations have no columns")
    LOGGER.debug("Factorising %d x %d normal equations (nnz=%d)", k, k, A.nnz)
    try:
        lu = spla.splu(A, permc_spec="MMD_AT_PLUS_A")
    except RuntimeError as exc:
        raise np.linalg.LinAlgError(f"normal equations are singular: {exc}") from exc
    diagU = np.abs(lu.U.diagonal())
    dmax = float(np.max(diagU)) if diagU.size else 0.0
    rcond = float(np.min(diagU)) / dmax if dmax > 0 else 0.0
    tol = np.finfo(float).eps * k if rcond_tol is None else float(rcond_tol)
    if not np.isfinite(rcond) or rcond <= tol:
        raise np.linalg.LinAlgError(
            f"normal equations are numerically singular (pivot ratio {rcond:.3g})",
        )
    return SparseNormalEquations(gram=A, lu=lu, rcond=rcond)

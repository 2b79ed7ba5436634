"""Multi-tissue informed log-domain intensity normalisation.

Estimates a smooth multiplicative normalisation field and one balance factor
per tissue compartment so that the balanced sum of all compartments becomes
a constant reference value inside a mask. The field is a 3D polynomial fitted
in the log domain; outliers (lesions, partial volume extremes) are pruned
from the mask with a quartile rule as the estimate improves.

The estimation alternates between two nested loops: an inner loop that
refits the balance factors and prunes the mask until the mask stops
changing, and an outer loop that refits the field with the current mask and
factors for a fixed number of iterations.
"""

import numpy as np
from scipy import linalg as scipy_linalg

from mtnorm.utils.logging import logger
from mtnorm.utils.parallel import determine_num_threads, parallel_slabs

# SH DC term for a unit angular integral, 1 / (2 * sqrt(pi)).
DEFAULT_REFERENCE_VALUE = 0.28209479177387814
DEFAULT_MAIN_ITER = 15
DEFAULT_BALANCE_MAXITER = 7
DEFAULT_POLY_ORDER = 3

COARSE_OUTLIER_RANGE = 3.0
OUTLIER_RANGE = 1.5

_N_BASIS_VECS = {0: 1, 1: 4, 2: 10, 3: 20}


class NormalisationError(RuntimeError):
    """Numerical failure that aborts a normalisation run."""


def _is_integer(value):
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def n_basis_vecs(order):
    """Number of polynomial basis terms for a given order.

    Parameters
    ----------
    order : int
        Maximum polynomial degree, 0 to 3.

    Returns
    -------
    n : int
        1, 4, 10 or 20.
    """
    if not _is_integer(order) or order not in _N_BASIS_VECS:
        raise ValueError(f"order must be one of 0, 1, 2, 3, got {order!r}")
    return _N_BASIS_VECS[int(order)]


def _poly_terms(x, y, z, order):
    """Yield the basis columns up to ``order``, in design matrix order."""
    yield np.ones_like(x)
    if order < 1:
        return
    yield x
    yield y
    yield z
    if order < 2:
        return
    yield x * x
    yield y * y
    yield z * z
    yield x * y
    yield x * z
    yield y * z
    if order < 3:
        return
    yield x * x * x
    yield y * y * y
    yield z * z * z
    yield x * x * y
    yield x * x * z
    yield y * y * x
    yield y * y * z
    yield z * z * x
    yield z * z * y
    yield x * y * z


def poly_basis(*, positions, order):
    """Evaluate the polynomial basis at physical positions.

    Columns are cumulative with order::

        order 0: 1
        order 1: x, y, z
        order 2: x², y², z², xy, xz, yz
        order 3: x³, y³, z³, x²y, x²z, xy², y²z, xz², yz², xyz

    Parameters
    ----------
    positions : ndarray
        Physical coordinates, shape (N, 3).
    order : int
        Maximum polynomial degree, 0 to 3.

    Returns
    -------
    basis : ndarray
        Design matrix, shape (N, K) with ``K = n_basis_vecs(order)``.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    K = n_basis_vecs(order)
    basis = np.empty((positions.shape[0], K), dtype=np.float64)
    x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]
    for k, term in enumerate(_poly_terms(x, y, z, order)):
        basis[:, k] = term
    return basis


def cholesky_lstsq(*, X, y):
    """Solve the least-squares problem ``X beta = y`` via normal equations.

    Parameters
    ----------
    X : ndarray
        Design matrix, shape (N, K).
    y : ndarray
        Target values, shape (N,).

    Returns
    -------
    beta : ndarray
        Coefficient vector, shape (K,).

    Raises
    ------
    NormalisationError
        If ``X^T X`` is not positive definite.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    M = X.T @ X
    alpha = X.T @ y
    try:
        factor = scipy_linalg.cho_factor(M, lower=True, check_finite=True)
    except (scipy_linalg.LinAlgError, ValueError) as e:
        raise NormalisationError(
            f"Normal equations matrix ({M.shape[0]}x{M.shape[1]}) built from "
            f"{X.shape[0]} samples is not positive definite: {e}"
        ) from e
    return scipy_linalg.cho_solve(factor, alpha)


def voxel_positions(*, voxels, affine):
    """Map integer voxel indices, shape (N, 3), to physical positions."""
    voxels = np.asarray(voxels, dtype=np.float64)
    return voxels @ affine[:3, :3].T + affine[:3, 3]


class NormalisationState:
    """Scratch grids and warm-started fit state of one normalisation run.

    Parameters
    ----------
    combined_tissue : ndarray
        Non-negative tissue values, shape (X, Y, Z, T).
    initial_mask : ndarray
        Boolean mask of voxels eligible for fitting, shape (X, Y, Z).
    affine : ndarray, optional
        4x4 voxel to physical transform. Identity if None.
    num_threads : int, optional
        Threads used for voxel passes.
    """

    def __init__(
        self, combined_tissue, initial_mask, *, affine=None, num_threads=None
    ):
        self.combined_tissue = np.asarray(combined_tissue, dtype=np.float64)
        self.initial_mask = np.array(initial_mask, dtype=bool)
        self.initial_mask.setflags(write=False)
        shape = self.initial_mask.shape

        self.mask = self.initial_mask.copy()
        self.prev_mask = self.initial_mask.copy()
        self.num_voxels = int(np.count_nonzero(self.mask))

        self.balance_factors = np.ones(self.combined_tissue.shape[-1])
        self.norm_field_log = np.zeros(shape, dtype=np.float64)
        self.norm_field_image = np.ones(shape, dtype=np.float64)
        self.summed_log = np.zeros(shape, dtype=np.float64)
        self.weights = None

        self.affine = np.eye(4) if affine is None else np.asarray(affine, float)
        self.num_threads = determine_num_threads(num_threads)

    @property
    def shape(self):
        return self.initial_mask.shape

    @property
    def n_tissue_types(self):
        return self.combined_tissue.shape[-1]

    def run_slabs(self, func):
        """Run ``func`` over slabs of the grid and return the per-slab results."""
        return parallel_slabs(func, self.shape[0], num_threads=self.num_threads)


def estimate_balance_factors(state):
    """Solve for per-tissue balance factors over the active mask.

    Each active voxel contributes one row ``combined_tissue / norm_field_image``
    with target 1. Tissues whose rows are exact copies of one another cannot be
    told apart; they are solved as a single unknown whose factor is split evenly
    among the copies. The factors are finally divided by their geometric mean so
    that ``sum(log(factors)) == 0``.

    Parameters
    ----------
    state : NormalisationState

    Returns
    -------
    balance_factors : ndarray
        Shape (T,).

    Raises
    ------
    NormalisationError
        If any factor is not strictly positive, or the system is rank
        deficient.
    """
    if state.n_tissue_types == 1:
        return np.ones(1)

    field = state.norm_field_image[state.mask]
    X = state.combined_tissue[state.mask] / field[:, np.newaxis]
    y = np.ones(X.shape[0])

    unique_cols, inverse = np.unique(X, axis=1, return_inverse=True)
    inverse = np.ravel(inverse)
    copies = np.bincount(inverse)
    factors = (cholesky_lstsq(X=unique_cols, y=y) / copies)[inverse]

    for j, factor in enumerate(factors):
        if not factor > 0.0:
            raise NormalisationError(
                "Non-positive tissue balance factor was computed."
                f" Tissue index: {j + 1} Balance factor: {factor}"
                " Needs to be strictly positive!"
            )
    return factors / np.exp(np.mean(np.log(factors)))


def _quartile_index(fraction, n):
    # Round half away from zero, clipped to the last element.
    return min(int(np.floor(fraction * n + 0.5)), n - 1)


def reject_outliers(state, outlier_range):
    """Prune the working mask with a quartile rule on the summed log signal.

    The working mask is reset to the initial mask, then every voxel whose
    ``log(sum_j factor_j * tissue_j / field)`` lies outside
    ``[Q1 - r * IQR, Q3 + r * IQR]`` is switched off. Updates ``state.mask``,
    ``state.num_voxels`` and ``state.summed_log`` in place.

    Parameters
    ----------
    state : NormalisationState
    outlier_range : float
        Multiple of the inter-quartile range kept on each side.
    """
    factors = state.balance_factors

    def _summed_log(slab):
        weighted = state.combined_tissue[slab] @ factors
        with np.errstate(divide="ignore", invalid="ignore"):
            state.summed_log[slab] = np.log(weighted / state.norm_field_image[slab])

    state.run_slabs(_summed_log)
    state.mask[...] = state.initial_mask

    values = state.summed_log[state.mask]
    n = values.size
    if n == 0:
        raise NormalisationError("Mask contains no valid voxels.")

    lower_idx = _quartile_index(0.25, n)
    upper_idx = _quartile_index(0.75, n)
    ordered = np.partition(values, (lower_idx, upper_idx))
    lower_quartile = ordered[lower_idx]
    upper_quartile = ordered[upper_idx]
    spread = upper_quartile - lower_quartile
    lower_threshold = lower_quartile - outlier_range * spread
    upper_threshold = upper_quartile + outlier_range * spread

    def _prune(slab):
        active = state.mask[slab]
        summed = state.summed_log[slab]
        outliers = active & ((summed < lower_threshold) | (summed > upper_threshold))
        active[outliers] = False
        return int(np.count_nonzero(outliers))

    state.num_voxels = n - sum(state.run_slabs(_prune))
    logger.debug(
        "Outlier rejection (range %.1f): thresholds [%g, %g], %d voxels kept",
        outlier_range,
        lower_threshold,
        upper_threshold,
        state.num_voxels,
    )
    if state.num_voxels == 0:
        raise NormalisationError("Outlier rejection removed every voxel from the mask.")


def fit_field_weights(state, *, order, log_reference):
    """Fit the log-domain normalisation field over the active mask.

    Parameters
    ----------
    state : NormalisationState
    order : int
        Polynomial order of the field.
    log_reference : float
        Log of the reference value for the balanced tissue sum.

    Returns
    -------
    weights : ndarray
        Basis weights, shape (K,).
    """
    voxels = np.argwhere(state.mask)
    positions = voxel_positions(voxels=voxels, affine=state.affine)
    X = poly_basis(positions=positions, order=order)
    balanced_sum = state.combined_tissue[state.mask] @ state.balance_factors
    y = np.log(balanced_sum) - log_reference
    return cholesky_lstsq(X=X, y=y)


def evaluate_field(state, weights, *, order):
    """Expand basis weights into ``norm_field_log`` and ``norm_field_image``.

    The fitted polynomial is evaluated over the whole grid, including voxels
    outside the mask. Basis terms are accumulated one at a time so that no
    design matrix is held for the grid.
    """
    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != (n_basis_vecs(order),):
        raise ValueError(
            f"Expected {n_basis_vecs(order)} weights for order {order}, "
            f"got shape {weights.shape}"
        )
    _, ny, nz = state.shape

    def _field_log(slab):
        voxels = np.mgrid[slab, 0:ny, 0:nz].reshape(3, -1).T
        positions = voxel_positions(voxels=voxels, affine=state.affine)
        x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]
        field_log = np.zeros(positions.shape[0])
        for weight, term in zip(weights, _poly_terms(x, y, z, order)):
            field_log += weight * term
        state.norm_field_log[slab] = field_log.reshape(-1, ny, nz)

    def _field_image(slab):
        np.exp(state.norm_field_log[slab], out=state.norm_field_image[slab])

    state.run_slabs(_field_log)
    state.run_slabs(_field_image)


def _masks_equal(state):
    return all(
        state.run_slabs(
            lambda slab: np.array_equal(state.mask[slab], state.prev_mask[slab])
        )
    )


def _run_normalisation(state, *, order, niter, reference_value):
    log_reference = np.log(reference_value)

    reject_outliers(state, COARSE_OUTLIER_RANGE)
    state.prev_mask[...] = state.mask

    for iteration in range(1, niter + 1):
        logger.info("Iteration: %d", iteration)

        balance_iter = 1
        balance_converged = False
        while not balance_converged and balance_iter <= DEFAULT_BALANCE_MAXITER:
            logger.debug(
                "Balance and outlier rejection iteration %d starts.", balance_iter
            )

            if state.n_tissue_types > 1:
                state.balance_factors = estimate_balance_factors(state)
            logger.info(
                "Balance factors (%d): %s",
                balance_iter,
                " ".join(f"{f:g}" for f in state.balance_factors),
            )

            reject_outliers(state, OUTLIER_RANGE)
            balance_converged = _masks_equal(state)
            state.prev_mask[...] = state.mask
            balance_iter += 1

        state.weights = fit_field_weights(
            state, order=order, log_reference=log_reference
        )
        evaluate_field(state, state.weights, order=order)


class MTNormaliseFit:
    """Result of a multi-tissue normalisation run.

    Attributes
    ----------
    norm_field_image : ndarray
        Multiplicative normalisation field, shape (X, Y, Z).
    norm_field_log : ndarray
        Log of ``norm_field_image``.
    mask : ndarray
        Final outlier-free mask.
    balance_factors : ndarray
        Per-tissue balance factors, shape (T,).
    weights : ndarray
        Polynomial basis weights of the log field.
    lognorm_scale : float
        Geometric mean of the field over the final mask.
    """

    def __init__(self, state, *, order, niter, reference_value):
        self.norm_field_image = state.norm_field_image
        self.norm_field_log = state.norm_field_log
        self.mask = state.mask
        self.balance_factors = state.balance_factors
        self.weights = state.weights
        self.order = order
        self.n_iter = niter
        self.reference_value = reference_value
        self.lognorm_scale = float(np.exp(np.mean(state.norm_field_log[state.mask])))

    def apply(self, tissues, *, balanced=False):
        """Normalise tissue volumes with the fitted field.

        Voxels whose first volume is negative are set to zero in every
        volume; all other values are multiplied by the balance factor (only
        when ``balanced``) and divided by the field.

        Parameters
        ----------
        tissues : sequence of ndarray
            The tissue volumes the fit was computed from, 3D or 4D.
        balanced : bool, optional
            Fold the per-tissue balance factors into the output.

        Returns
        -------
        normalised : list of ndarray
        """
        normalised = []
        for j, tissue in enumerate(tissues):
            tissue = np.asarray(tissue)
            multiplier = self.balance_factors[j] if balanced else 1.0
            scale = multiplier / self.norm_field_image
            first = tissue[..., 0] if tissue.ndim == 4 else tissue
            if tissue.ndim == 4:
                scale = scale[..., np.newaxis]

            out = tissue * scale
            out[first < 0] = 0
            if np.issubdtype(tissue.dtype, np.floating):
                out = out.astype(tissue.dtype, copy=False)
            normalised.append(out)
        return normalised

    def metadata(self, index, *, balanced=False):
        """Provenance key/values for the output of tissue ``index``."""
        meta = {"lognorm_scale": self.lognorm_scale}
        if balanced:
            meta["lognorm_balance"] = float(self.balance_factors[index])
        return meta


def _validate_config(*, order, niter, reference_value, num_threads):
    n_basis_vecs(order)
    if not _is_integer(niter) or niter < 1:
        raise ValueError(f"niter must be a positive integer, got {niter!r}")
    if (
        isinstance(reference_value, bool)
        or not isinstance(reference_value, (int, float, np.integer, np.floating))
        or not np.isfinite(reference_value)
        or reference_value <= 0
    ):
        raise ValueError(
            f"reference_value must be a positive number, got {reference_value!r}"
        )
    determine_num_threads(num_threads)


def _prepare_inputs(tissues, mask, *, num_threads):
    """Build the combined tissue grid and the initial mask.

    Returns
    -------
    combined_tissue : ndarray
        First volume of every tissue clamped at zero, shape (X, Y, Z, T).
    initial_mask : ndarray
        Voxels of ``mask`` whose summed tissue is finite and positive.
    """
    if len(tissues) == 0:
        raise ValueError("At least one tissue volume is required.")

    first_volumes = []
    for j, tissue in enumerate(tissues):
        tissue = np.asarray(tissue)
        if tissue.ndim not in (3, 4):
            raise ValueError(
                f"Tissue volume {j + 1} must be 3D or 4D, got {tissue.ndim} dimensions."
            )
        first = tissue[..., 0] if tissue.ndim == 4 else tissue
        if first_volumes and first.shape != first_volumes[0].shape:
            raise ValueError(
                f"Tissue volume {j + 1} has spatial shape {first.shape}, "
                f"expected {first_volumes[0].shape}."
            )
        first_volumes.append(first.astype(np.float64))

    shape = first_volumes[0].shape
    mask = np.asarray(mask)
    if mask.ndim == 4 and mask.shape[3] == 1:
        mask = mask[..., 0]
    if mask.shape != shape:
        raise ValueError(f"Mask has shape {mask.shape}, expected {shape}.")
    mask = mask.astype(bool)

    combined_tissue = np.empty(shape + (len(first_volumes),), dtype=np.float64)
    initial_mask = np.zeros(shape, dtype=bool)

    def _combine(slab):
        summed = np.zeros_like(first_volumes[0][slab])
        for j, first in enumerate(first_volumes):
            summed += first[slab]
            combined_tissue[slab, ..., j] = np.maximum(first[slab], 0.0)
        with np.errstate(invalid="ignore"):
            valid = np.isfinite(summed) & (summed > 0.0) & mask[slab]
        initial_mask[slab] = valid
        return int(np.count_nonzero(valid))

    num_voxels = sum(
        parallel_slabs(_combine, shape[0], num_threads=num_threads)
    )
    if not num_voxels:
        raise ValueError("Mask contains no valid voxels.")
    return combined_tissue, initial_mask


def mtnormalise(
    tissues,
    mask,
    *,
    affine=None,
    order=DEFAULT_POLY_ORDER,
    niter=DEFAULT_MAIN_ITER,
    reference_value=DEFAULT_REFERENCE_VALUE,
    balanced=False,
    num_threads=None,
    return_fit=False,
):
    """Multi-tissue informed log-domain intensity normalisation.

    Parameters
    ----------
    tissues : sequence of ndarray
        Co-registered tissue compartments (e.g. from multi-tissue CSD), each
        3D or 4D with identical spatial shape. Only the first volume of a 4D
        input takes part in the estimation; every volume is normalised.
    mask : ndarray
        3D boolean mask of the voxels used to compute the normalisation.
    affine : ndarray, optional
        4x4 voxel to physical transform used to position the polynomial
        basis. Identity if None.
    order : int, optional
        Maximum order (0 to 3) of the polynomial basis of the log field. An
        order of 0 allows no spatial variation of the normalisation.
    niter : int, optional
        Number of outer iterations; always run in full.
    reference_value : float, optional
        Positive value the balanced tissue sum is normalised to.
    balanced : bool, optional
        Fold the per-tissue balance factors into the output scaling.
    num_threads : int, optional
        Threads used for voxel passes. None uses every CPU; negative values
        count back from the CPU count.
    return_fit : bool, optional
        If True, also return the :class:`MTNormaliseFit`.

    Returns
    -------
    normalised : list of ndarray
        One normalised array per input tissue.
    fit : MTNormaliseFit
        Only returned if ``return_fit`` is True.

    Raises
    ------
    ValueError
        On invalid configuration, mismatched inputs or an empty mask.
    NormalisationError
        If the estimation fails numerically; no output is produced.
    """
    _validate_config(
        order=order,
        niter=niter,
        reference_value=reference_value,
        num_threads=num_threads,
    )
    if affine is not None:
        affine = np.asarray(affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"affine must be a 4x4 matrix, got shape {affine.shape}")

    combined_tissue, initial_mask = _prepare_inputs(
        tissues, mask, num_threads=num_threads
    )
    state = NormalisationState(
        combined_tissue, initial_mask, affine=affine, num_threads=num_threads
    )
    _run_normalisation(
        state, order=int(order), niter=int(niter), reference_value=reference_value
    )

    fit = MTNormaliseFit(
        state, order=int(order), niter=int(niter), reference_value=reference_value
    )
    logger.info(
        "Normalisation done: lognorm_scale %g, balance factors %s",
        fit.lognorm_scale,
        " ".join(f"{f:g}" for f in fit.balance_factors),
    )
    normalised = fit.apply(tissues, balanced=balanced)

    if return_fit:
        return normalised, fit
    return normalised

"""
Validation utilities for SimPower.

Validators collect error and warning strings into a ``_ValidationResult``;
callers print the warnings and call ``raise_if_invalid()`` to surface the
errors as the appropriate exception class from ``simpower.errors``.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Type, Union

import numpy as np

from ..errors import InvalidConfiguration, UnsupportedFamily

__all__ = []

SUPPORTED_FAMILIES = ("gaussian", "binomial")
_FAMILY_ALIASES = {
    "gaussian": "gaussian",
    "normal": "gaussian",
    "continuous": "gaussian",
    "binomial": "binomial",
    "binary": "binomial",
    "logistic": "binomial",
}


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self, error_cls: Type[Exception] = InvalidConfiguration):
        """Raise *error_cls* (``InvalidConfiguration`` by default) if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise error_cls(error_msg)

    def print_warnings(self):
        for warning in self.warnings:
            print(f"Warning: {warning}")


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float, np.integer, np.floating),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    allow_rounding: bool = False,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []
    warnings: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, warnings)

    if not np.isfinite(value):
        errors.append(f"{name} must be finite, got {value}")
        return _ValidationResult(False, errors, warnings)

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    if allow_rounding and isinstance(value, (float, np.floating)):
        rounded = int(round(value))
        if value != rounded:
            warnings.append(f"{name} rounded from {value} to {rounded}")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_power(power: Any) -> _ValidationResult:
    """Validate target power parameter (0-100%)."""
    return _validate_numeric_parameter(power, "Power", min_val=0, max_val=100)


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate alpha level parameter (0-0.25)."""
    return _validate_numeric_parameter(alpha, "Alpha", min_val=0, max_val=0.25)


def _validate_simulations(n_simulations: Any) -> Tuple[int, _ValidationResult]:
    """Validate and process number of simulations."""
    result = _validate_numeric_parameter(n_simulations, "Number of simulations", min_val=1, allow_rounding=True)

    if result.is_valid:
        rounded = int(round(n_simulations))
        if rounded < 100:
            result.warnings.append(f"Low simulation count ({rounded}). Consider using at least 100 for reliable results.")
        return rounded, result

    return 0, result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a random seed (non-negative integer below 2**32, or None)."""
    if seed is None:
        return _ValidationResult(True, [], [])
    return _validate_numeric_parameter(seed, "seed", expected_types=(int, np.integer), min_val=0, max_val=2**32 - 1)


def _validate_count(value: Any, name: str, min_val: int = 0) -> _ValidationResult:
    """Validate an integer count such as a group size or a unit target."""
    return _validate_numeric_parameter(value, name, expected_types=(int, np.integer), min_val=min_val)


def _validate_sd(value: Any, name: str) -> _ValidationResult:
    """Validate a standard deviation (finite, non-negative)."""
    return _validate_numeric_parameter(value, name, min_val=0)


def _validate_sample_sizes(sample_sizes: Any) -> _ValidationResult:
    """Validate the sample-size settings of a sweep."""
    errors: List[str] = []
    warnings: List[str] = []

    if isinstance(sample_sizes, (str, bytes)) or not isinstance(sample_sizes, Iterable):
        return _ValidationResult(False, [f"sample_sizes must be a sequence of integers, got {type(sample_sizes).__name__}"], [])

    sizes = list(sample_sizes)
    if not sizes:
        errors.append("sample_sizes cannot be empty")

    for size in sizes:
        if isinstance(size, bool) or not isinstance(size, (int, np.integer)) or size < 1:
            errors.append(f"sample_sizes must contain positive integers, got {size!r}")

    if len(set(sizes)) != len(sizes):
        errors.append(f"sample_sizes contains duplicates: {sizes}")

    if len(sizes) > 100:
        warnings.append(f"Large number of sample sizes to test ({len(sizes)}). This may take significant time.")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_effect_sizes(effect_sizes: Any) -> _ValidationResult:
    """Validate the effect-size settings of a sweep."""
    errors: List[str] = []

    if isinstance(effect_sizes, (str, bytes)) or not isinstance(effect_sizes, Iterable):
        return _ValidationResult(False, [f"effect_sizes must be a sequence of numbers, got {type(effect_sizes).__name__}"], [])

    effects = list(effect_sizes)
    if not effects:
        errors.append("effect_sizes cannot be empty")

    for effect in effects:
        if isinstance(effect, bool) or not isinstance(effect, (int, float, np.integer, np.floating)) or not np.isfinite(effect):
            errors.append(f"effect_sizes must contain finite numbers, got {effect!r}")

    if len(set(effects)) != len(effects):
        errors.append(f"effect_sizes contains duplicates: {effects}")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_correlation_matrix(
    corr_matrix: Optional[np.ndarray],
) -> _ValidationResult:
    """Validate correlation matrix meets mathematical requirements."""
    errors = []

    if corr_matrix is None:
        errors.append("Correlation matrix is None")
        return _ValidationResult(False, errors, [])

    if corr_matrix.ndim != 2 or corr_matrix.shape[0] != corr_matrix.shape[1]:
        errors.append("Correlation matrix must be square")
        return _ValidationResult(False, errors, [])

    if not np.allclose(np.diag(corr_matrix), 1.0):
        errors.append("Diagonal elements of correlation matrix must be 1")

    if not np.allclose(corr_matrix, corr_matrix.T):
        errors.append("Correlation matrix must be symmetric")

    if np.any(np.abs(corr_matrix) > 1):
        errors.append("All correlations must be between -1 and 1")

    try:
        eigenvals = np.linalg.eigvalsh((corr_matrix + corr_matrix.T) / 2)
        if np.any(eigenvals < -1e-8):  # Tolerance for floating point noise
            errors.append("Correlation matrix must be positive semi-definite")
    except np.linalg.LinAlgError:
        errors.append("Cannot compute eigenvalues of correlation matrix")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_covariance_matrix(cov: np.ndarray, size: int, name: str) -> _ValidationResult:
    """Validate a random-effect covariance matrix of the expected size."""
    errors = []

    if cov.shape != (size, size):
        errors.append(f"{name} covariance must be {size}x{size}, got {cov.shape}")
        return _ValidationResult(False, errors, [])

    if not np.all(np.isfinite(cov)):
        errors.append(f"{name} covariance contains non-finite values")
        return _ValidationResult(False, errors, [])

    if not np.allclose(cov, cov.T):
        errors.append(f"{name} covariance must be symmetric")

    if np.any(np.diag(cov) < 0):
        errors.append(f"{name} variances must be non-negative")
    elif np.any(np.linalg.eigvalsh((cov + cov.T) / 2) < -1e-8):
        errors.append(f"{name} covariance must be positive semi-definite")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> Tuple[Tuple[Any, int], _ValidationResult]:
    """Validate parallel processing settings.

    Args:
        enable: True, False or "mixedmodels"
        n_cores: Number of worker processes (positive int or None for auto)

    Returns:
        ((enable, n_cores), ValidationResult)
    """
    import multiprocessing as mp

    errors = []

    if enable not in (True, False, "mixedmodels"):
        errors.append(f"enable must be True, False, or 'mixedmodels', got {enable!r}")
        return (False, 1), _ValidationResult(False, errors, [])

    max_cores = mp.cpu_count() or 1
    validated_n_cores = max(1, max_cores // 2)

    if n_cores is not None:
        if isinstance(n_cores, bool) or not isinstance(n_cores, int) or n_cores <= 0:
            errors.append(f"n_cores must be a positive integer, got {n_cores}")
        else:
            validated_n_cores = min(n_cores, max_cores)

    return (enable, validated_n_cores), _ValidationResult(len(errors) == 0, errors, [])


def _validate_family(family: Any) -> Tuple[str, _ValidationResult]:
    """Resolve a family name (or alias) to ``"gaussian"`` or ``"binomial"``."""
    if not isinstance(family, str):
        return "", _ValidationResult(False, [f"family must be a string, got {type(family).__name__}"], [])

    resolved = _FAMILY_ALIASES.get(family.strip().lower())
    if resolved is None:
        return "", _ValidationResult(
            False,
            [f"Unsupported family '{family}'. Supported: {', '.join(SUPPORTED_FAMILIES)}"],
            [],
        )
    return resolved, _ValidationResult(True, [], [])


def _resolve_family(family: Any) -> str:
    """Return the canonical family name or raise ``UnsupportedFamily``."""
    resolved, result = _validate_family(family)
    result.raise_if_invalid(UnsupportedFamily)
    return resolved

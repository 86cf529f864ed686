from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

LOGGER = logging.getLogger(__name__)

# Absolute tolerance unless the key is listed in RELATIVE_CHECKPOINTS.
DEFAULT_TOLERANCES: Dict[str, float] = {
    "filtered_regions": 0.0,
    "norm_factor_min": 0.01,
    "norm_factor_max": 0.01,
    "common_bcv": 0.01,
    "down": 0.05,
    "up": 0.05,
}
RELATIVE_CHECKPOINTS = {"down", "up"}


def load_manifest(path: Path) -> Dict[str, object]:
    """Parse a JSON or ``key=value`` run manifest."""

    if not path.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")

    text = path.read_text().strip()
    if not text:
        return {}

    lowered = path.suffix.lower()
    if lowered in {".json", ".js", ".json5"} or text.lstrip().startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse JSON manifest {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Manifest {path} must contain a JSON object")
        return data

    result: Dict[str, object] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" in stripped:
            key, value = stripped.split("=", 1)
        elif "\t" in stripped:
            key, value = stripped.split("\t", 1)
        else:
            parts = stripped.split(None, 1)
            if len(parts) != 2:
                raise ValueError(
                    f"Cannot parse manifest line '{line}' in {path}; expected 'key value'"
                )
            key, value = parts
        result[key.strip()] = value.strip()
    return result


def _coerce_optional_float(value: object) -> Optional[float]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, str) and value.strip() in {"", "-", "NA", "None", "none"}:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Checkpoint value must be numeric, received {value!r}") from exc


@dataclass
class CheckpointResult:
    name: str
    observed: float
    expected: Optional[float]
    tolerance: float
    relative: bool

    @property
    def passed(self) -> bool:
        if self.expected is None:
            return True
        allowed = self.tolerance * abs(self.expected) if self.relative else self.tolerance
        return abs(self.observed - self.expected) <= allowed + 1e-12

    def as_dict(self) -> Dict[str, object]:
        return {
            "observed": self.observed,
            "expected": self.expected,
            "tolerance": self.tolerance,
            "relative": self.relative,
            "passed": self.passed,
        }


class CheckpointRegistry:
    """Compares headline numbers of a run against expected values.

    Mismatches are logged as warnings, or raised as :class:`ValueError` when
    ``strict`` is set.  Observed values are always recorded so the summary can
    be written to the run metadata.
    """

    def __init__(
        self,
        expected: Optional[Mapping[str, object]] = None,
        *,
        tolerances: Optional[Mapping[str, object]] = None,
        strict: bool = False,
    ) -> None:
        self.expected: Dict[str, Optional[float]] = {
            str(key): _coerce_optional_float(value) for key, value in (expected or {}).items()
        }
        self.tolerances: Dict[str, float] = dict(DEFAULT_TOLERANCES)
        for key, value in (tolerances or {}).items():
            coerced = _coerce_optional_float(value)
            if coerced is None or coerced < 0:
                raise ValueError(f"Tolerance for '{key}' must be a non-negative number")
            self.tolerances[str(key)] = coerced
        self.strict = strict
        self.results: Dict[str, CheckpointResult] = {}

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, object], *, strict: bool = False) -> "CheckpointRegistry":
        """Read an ``expected`` block (or ``expected_*`` keys) and ``tolerances``."""

        expected: Dict[str, object] = {}
        block = manifest.get("expected")
        if isinstance(block, Mapping):
            expected.update(block)
        for key, value in manifest.items():
            if key.startswith("expected_"):
                expected[key[len("expected_"):]] = value
        tolerances: Dict[str, object] = {}
        tol_block = manifest.get("tolerances")
        if isinstance(tol_block, Mapping):
            tolerances.update(tol_block)
        for key, value in manifest.items():
            if key.startswith("tolerance_"):
                tolerances[key[len("tolerance_"):]] = value
        strict_value = manifest.get("strict", strict)
        if isinstance(strict_value, str):
            strict_value = strict_value.strip().lower() in {"1", "true", "yes"}
        return cls(expected, tolerances=tolerances, strict=bool(strict_value))

    @property
    def enabled(self) -> bool:
        return any(value is not None for value in self.expected.values())

    @property
    def failures(self) -> Dict[str, CheckpointResult]:
        return {name: result for name, result in self.results.items() if not result.passed}

    def record(self, name: str, observed: float) -> CheckpointResult:
        result = CheckpointResult(
            name=name,
            observed=float(observed),
            expected=self.expected.get(name),
            tolerance=self.tolerances.get(name, 0.0),
            relative=name in RELATIVE_CHECKPOINTS,
        )
        self.results[name] = result
        if result.expected is None:
            return result
        if result.passed:
            LOGGER.info("Checkpoint %s: observed %g matches expected %g", name, result.observed, result.expected)
            return result

        message = (
            f"Checkpoint {name}: observed {result.observed:g}, expected {result.expected:g}"
            f" (tolerance {result.tolerance:g}{' relative' if result.relative else ''})"
        )
        if self.strict:
            raise ValueError(message)
        LOGGER.warning(message)
        return result

    def summarize(self) -> Dict[str, object]:
        checked = [result for result in self.results.values() if result.expected is not None]
        return {
            "strict": self.strict,
            "checked": len(checked),
            "failed": sorted(self.failures),
        }

    def metadata_entry(self) -> Dict[str, object]:
        entry = self.summarize()
        entry["values"] = {name: result.as_dict() for name, result in self.results.items()}
        return entry

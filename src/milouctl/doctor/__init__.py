"""Doctor command infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, create_probe_context, run_probe, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorImpact,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import POST_OPERATION_PROBES, collect_probes, post_operation_warnings
from .utils import serialize_report, serialize_result

__all__ = [
    "DoctorEngine",
    "DoctorImpact",
    "DoctorReport",
    "DoctorSummary",
    "POST_OPERATION_PROBES",
    "PROBE_CATEGORY_VALUES",
    "ProbeCategory",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "create_probe_context",
    "post_operation_warnings",
    "run_probe",
    "run_probes",
    "serialize_report",
    "serialize_result",
]

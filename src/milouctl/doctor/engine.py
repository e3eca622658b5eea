"""Probe execution harness for the doctor command."""

from __future__ import annotations

import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING

from .models import (
    DoctorImpact,
    DoctorReport,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    build_report,
)

if TYPE_CHECKING:
    from ..cli import RuntimeContext


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _coerce_result(probe: ProbeDefinition, result: ProbeResult, duration_ms: int) -> ProbeResult:
    coerced = result
    if result.id != probe.id or result.category != probe.category:
        coerced = replace(coerced, id=probe.id, category=probe.category)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    return coerced


def _unexpected_failure(probe: ProbeDefinition, exc: Exception, duration_ms: int) -> ProbeResult:
    return ProbeResult(
        id=probe.id,
        category=probe.category,
        status=ProbeStatus.RED,
        impact=DoctorImpact.PROVIDER,
        message=f"Probe '{probe.id}' raised an unexpected error: {exc}",
        duration_ms=duration_ms,
        data={"exception": repr(exc), "traceback": traceback.format_exc()},
        warnings=("unhandled-exception",),
    )


def run_probe(probe: ProbeDefinition, context: ProbeContext) -> ProbeResult:
    """Run a single probe, converting unexpected exceptions into a red result."""
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # noqa: BLE001 - a broken probe must not abort the report
        return _unexpected_failure(probe, exc, _duration_ms(start))
    return _coerce_result(probe, result, _duration_ms(start))


def run_probes(context: ProbeContext, probes: Sequence[ProbeDefinition]) -> list[ProbeResult]:
    """Execute *probes* in order.

    Probes share the Docker daemon and the classifier cache, so they run
    sequentially.
    """
    return [run_probe(probe, context) for probe in probes]


def create_probe_context(runtime: RuntimeContext) -> ProbeContext:
    """Build a ProbeContext from the CLI runtime context."""
    return ProbeContext(
        config=runtime.config,
        env=runtime.env,
        runtime=runtime.docker,
        compose=runtime.compose,
        classifier=runtime.classifier,
        health=runtime.health,
        snapshots=runtime.snapshots,
        credentials=runtime.credentials,
        logger=runtime.logger,
    )


class DoctorEngine:
    """Coordinator that executes probes and aggregates the overall report."""

    def __init__(self, context: ProbeContext) -> None:
        """Store the probe execution context."""
        self._context = context

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run the supplied probes and build a doctor report."""
        start = time.perf_counter()
        results = run_probes(self._context, probes)
        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "probe_count": len(results),
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)

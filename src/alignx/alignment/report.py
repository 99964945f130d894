"""Batch-level quality report."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

from alignx.alignment.landmarks import QualityTier

if TYPE_CHECKING:
    from collections.abc import Sequence

    from alignx.alignment.batch import NormalizationResult


@dataclass(frozen=True)
class IssueCount:
    issue: str
    count: int


@dataclass(frozen=True)
class BatchQualityReport:
    total_images: int
    successful: int
    failed: int
    with_warnings: int
    average_processing_time_ms: float
    quality_distribution: dict[QualityTier, int]
    common_issues: tuple[IssueCount, ...]


def generate_quality_report(results: Sequence[NormalizationResult], top_n: int = 5) -> BatchQualityReport:
    """Summarize a list of normalization results.

    Only images that reached pose analysis count towards the quality
    distribution. Ties in issue frequency keep first-seen order.
    """
    distribution = {tier: 0 for tier in QualityTier}
    issues: Counter[str] = Counter()
    total_time = 0.0

    for result in results:
        total_time += result.processing_time_ms
        if result.analysis is not None:
            distribution[result.analysis.quality] += 1
        issues.update(result.warnings)

    successful = sum(1 for r in results if r.success)
    return BatchQualityReport(
        total_images=len(results),
        successful=successful,
        failed=len(results) - successful,
        with_warnings=sum(1 for r in results if r.warnings),
        average_processing_time_ms=total_time / len(results) if results else 0.0,
        quality_distribution=distribution,
        common_issues=tuple(IssueCount(issue, count) for issue, count in issues.most_common(top_n)),
    )

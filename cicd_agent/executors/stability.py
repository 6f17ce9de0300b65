"""StabilityEvaluator：对比基线窗口与实时窗口的指标，给出 0-100 的稳定性评分。

评分算法（score 函数，纯函数、确定性）：

1. 每个指标按时间排序、丢弃 NaN/inf，两窗口对齐到 n = min(len) 个
   连续分桶的均值；
2. 偏移量取标准化均值差 d = (mean_live - mean_base) / sqrt((var_b + var_l) / 2)，
   同时报告 p95 偏移；
3. 只有不利方向（d > 0）计罚：penalty = min(1, d / DEVIATION_CAP)；
4. 按权重（latency 0.4, error_rate 0.4, saturation 0.2）在参与评分的
   指标上重新归一化：score = round(100 * (1 - Σw·p / Σw), 1)。

样本不足、基线缺失的指标被排除并在 summary 中注明；没有任何指标
参与评分时抛出 InsufficientDataError。
"""

from __future__ import annotations

import math
import statistics
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from cicd_agent.domain.exceptions import InsufficientDataError
from cicd_agent.infrastructure.logging.logger import logger
from cicd_agent.infrastructure.retry import RetryPolicy
from cicd_agent.integrations.prometheus import MetricsBackend, Sample
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext

DEVIATION_CAP = 3.0
DEFAULT_MIN_SAMPLES = 5
# 取值会被拼进 PromQL 标签选择器，只允许 Kubernetes 名称字符
DNS_LABEL = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
DNS_SUBDOMAIN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"
METRIC_WEIGHTS: Mapping[str, float] = {"latency": 0.4, "error_rate": 0.4, "saturation": 0.2}


@dataclass
class MetricAssessment:
    metric: str
    weight: float
    samples: int
    baseline_mean: float
    live_mean: float
    deviation: float
    p95_shift: float
    penalty: float


@dataclass
class StabilityReport:
    deployment_id: str
    score: float
    metrics: List[MetricAssessment] = field(default_factory=list)
    excluded: Dict[str, str] = field(default_factory=dict)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clean(samples: Sequence[Sample]) -> List[float]:
    ordered = sorted(samples, key=lambda s: s.ts)
    return [s.value for s in ordered if math.isfinite(s.value)]


def _buckets(values: List[float], n: int) -> List[float]:
    """把序列切成 n 个连续分桶并取均值（n <= len(values)）。"""

    size = len(values)
    return [statistics.fmean(values[i * size // n:(i + 1) * size // n]) for i in range(n)]


def _p95(values: List[float]) -> float:
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def _deviation(base: List[float], live: List[float]) -> float:
    mean_b, mean_l = statistics.fmean(base), statistics.fmean(live)
    pooled = math.sqrt((statistics.pvariance(base) + statistics.pvariance(live)) / 2)
    if pooled == 0:
        if mean_l == mean_b:
            return 0.0
        return DEVIATION_CAP if mean_l > mean_b else -DEVIATION_CAP
    return (mean_l - mean_b) / pooled


def score(
    deployment_id: str,
    baseline: Mapping[str, Sequence[Sample]],
    live: Mapping[str, Sequence[Sample]],
    min_samples: int = DEFAULT_MIN_SAMPLES,
) -> StabilityReport:
    """计算稳定性评分；相同输入总是得到相同报告。"""

    excluded: Dict[str, str] = {}
    assessed: List[MetricAssessment] = []

    for metric in sorted(set(baseline) | set(live)):
        if metric not in METRIC_WEIGHTS:
            excluded[metric] = "not a tracked metric"
            continue
        base_values = _clean(baseline.get(metric) or [])
        live_values = _clean(live.get(metric) or [])
        if not base_values and live_values:
            excluded[metric] = "missing from baseline window"
            continue
        if len(base_values) < min_samples:
            excluded[metric] = f"fewer than {min_samples} baseline samples ({len(base_values)})"
            continue
        if len(live_values) < min_samples:
            excluded[metric] = f"fewer than {min_samples} live samples ({len(live_values)})"
            continue

        n = min(len(base_values), len(live_values))
        base_aligned = _buckets(base_values, n)
        live_aligned = _buckets(live_values, n)
        d = _deviation(base_aligned, live_aligned)
        assessed.append(
            MetricAssessment(
                metric=metric,
                weight=METRIC_WEIGHTS[metric],
                samples=n,
                baseline_mean=statistics.fmean(base_aligned),
                live_mean=statistics.fmean(live_aligned),
                deviation=round(d, 4),
                p95_shift=_p95(live_aligned) - _p95(base_aligned),
                penalty=min(1.0, max(0.0, d) / DEVIATION_CAP),
            )
        )

    for metric in METRIC_WEIGHTS:
        if metric not in excluded and all(a.metric != metric for a in assessed):
            excluded[metric] = "no samples in either window"

    if not assessed:
        raise InsufficientDataError(
            f"Not enough metric samples to evaluate {deployment_id}",
            deployment_id=deployment_id,
            excluded=excluded,
        )

    total_weight = sum(a.weight for a in assessed)
    weighted_penalty = sum(a.weight * a.penalty for a in assessed)
    value = round(100 * (1 - weighted_penalty / total_weight), 1)

    report = StabilityReport(deployment_id=deployment_id, score=value, metrics=assessed, excluded=excluded)
    report.summary = _summarize(report)
    return report


def _summarize(report: StabilityReport) -> str:
    parts = [f"Stability score {report.score}/100 for {report.deployment_id}."]
    drivers = sorted(
        (a for a in report.metrics if a.penalty > 0),
        key=lambda a: (-a.weight * a.penalty, a.metric),
    )
    if drivers:
        parts.append(
            "Drivers: "
            + ", ".join(f"{a.metric} (d={a.deviation:+.2f}, p95 shift {a.p95_shift:+.4g})" for a in drivers)
            + "."
        )
    else:
        parts.append("No adverse shift detected.")
    if report.excluded:
        parts.append("Excluded: " + "; ".join(f"{m}: {reason}" for m, reason in sorted(report.excluded.items())) + ".")
    return " ".join(parts)


@dataclass
class StabilityArgs:
    namespace: str
    deployment_name: str
    baseline_window_minutes: int
    live_window_minutes: int


class StabilityEvaluator(ActionExecutor[StabilityArgs]):
    name = "evaluate_stability"
    description = "对比部署前基线与部署后实时指标（延迟、错误率、饱和度），返回 0-100 稳定性评分"
    params = {
        "namespace": ToolParam(
            name="namespace",
            description="Deployment 所在命名空间",
            required=True,
            schema={"type": "string", "pattern": DNS_LABEL, "maxLength": 63},
        ),
        "deployment_name": ToolParam(
            name="deployment_name",
            description="Deployment 名称",
            required=True,
            schema={"type": "string", "pattern": DNS_SUBDOMAIN, "maxLength": 253},
        ),
        "baseline_window_minutes": ToolParam(
            name="baseline_window_minutes",
            description="基线窗口长度（分钟），默认 60",
            required=False,
            schema={"type": "integer", "minimum": 1, "maximum": 10080},
        ),
        "live_window_minutes": ToolParam(
            name="live_window_minutes",
            description="实时窗口长度（分钟），默认 15",
            required=False,
            schema={"type": "integer", "minimum": 1, "maximum": 1440},
        ),
    }

    def __init__(
        self,
        metrics: MetricsBackend,
        cfg=None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(retry_policy)
        self._metrics = metrics
        self._min_samples = getattr(cfg, "stability_min_samples", DEFAULT_MIN_SAMPLES)
        self._clock = clock

    def _coerce(self, args: Dict[str, Any]) -> StabilityArgs:
        return StabilityArgs(
            namespace=args["namespace"],
            deployment_name=args["deployment_name"],
            baseline_window_minutes=int(args.get("baseline_window_minutes") or 60),
            live_window_minutes=int(args.get("live_window_minutes") or 15),
        )

    def score(
        self,
        deployment_id: str,
        baseline: Mapping[str, Sequence[Sample]],
        live: Mapping[str, Sequence[Sample]],
    ) -> StabilityReport:
        return score(deployment_id, baseline, live, min_samples=self._min_samples)

    def execute(self, validated: StabilityArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        a = validated
        now = self._clock()
        live_start = now - a.live_window_minutes * 60
        baseline_start = live_start - a.baseline_window_minutes * 60

        baseline = self._external(
            "fetch_baseline",
            lambda: self._metrics.fetch_window(a.namespace, a.deployment_name, baseline_start, live_start),
            ctx,
        )
        live = self._external(
            "fetch_live",
            lambda: self._metrics.fetch_window(a.namespace, a.deployment_name, live_start, now),
            ctx,
        )
        report = self.score(f"{a.namespace}/{a.deployment_name}", baseline, live)
        logger.info(
            "Stability evaluated",
            extra={"extra": {"deployment": report.deployment_id, "score": report.score, "call_id": ctx.call_id}},
        )
        result = report.to_dict()
        result["windows"] = {
            "baseline": {"start": baseline_start, "end": live_start},
            "live": {"start": live_start, "end": now},
        }
        return result

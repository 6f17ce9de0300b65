"""指标后端（Prometheus）协作方。

fetch_window 返回某个 Deployment 在 [start, end) 时间范围内
每个被跟踪指标的样本序列；没有数据的指标不会出现在结果中。
"""

import math
import threading
from dataclasses import dataclass
from string import Template
from typing import Dict, List, Mapping, Optional, Protocol

import httpx

from cicd_agent.config.settings import settings
from cicd_agent.domain.exceptions import ApiError, NetworkError, RateLimitError

_POD = 'namespace="$namespace",pod=~"$deployment-.*"'

DEFAULT_QUERIES: Mapping[str, str] = {
    "latency": (
        "histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket{"
        + _POD
        + "}[5m])) by (le))"
    ),
    "error_rate": (
        "sum(rate(http_requests_total{" + _POD + ',status=~"5.."}[5m]))'
        " / sum(rate(http_requests_total{" + _POD + "}[5m]))"
    ),
    "saturation": (
        "sum(rate(container_cpu_usage_seconds_total{" + _POD + ',container!=""}[5m]))'
        " / sum(kube_pod_container_resource_limits{" + _POD + ',resource="cpu"})'
    ),
}


@dataclass(frozen=True)
class Sample:
    ts: float
    value: float


class MetricsBackend(Protocol):
    def fetch_window(self, namespace: str, deployment: str, start: float, end: float) -> Dict[str, List[Sample]]:
        """返回 [start, end) 内各指标的样本，没有样本的指标不出现在结果中。"""
        ...


class PrometheusMetricsBackend:
    name = "prometheus"

    def __init__(
        self,
        cfg=settings,
        queries: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._settings = cfg
        self._queries = dict(queries or DEFAULT_QUERIES)
        self._transport = transport

    def fetch_window(self, namespace: str, deployment: str, start: float, end: float) -> Dict[str, List[Sample]]:
        window: Dict[str, List[Sample]] = {}
        with httpx.Client(
            base_url=self._settings.prometheus_url,
            timeout=self._settings.http_timeout,
            transport=self._transport,
        ) as client:
            for metric, template in self._queries.items():
                query = Template(template).safe_substitute(namespace=namespace, deployment=deployment)
                # query_range 两端都包含；窗口按 [start, end) 截取，与相邻窗口不重叠
                samples = [s for s in self._query_range(client, metric, query, start, end) if s.ts < end]
                if samples:
                    window[metric] = samples
        return window

    def _query_range(self, client: httpx.Client, metric: str, query: str, start: float, end: float) -> List[Sample]:
        try:
            resp = client.get(
                "/api/v1/query_range",
                params={
                    "query": query,
                    "start": f"{start:.3f}",
                    "end": f"{end:.3f}",
                    "step": f"{self._settings.metrics_step_seconds}s",
                },
            )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), service=self.name)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Prometheus rate limit", service=self.name)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code, service=self.name, metric=metric)
        data = resp.json()
        if data.get("status") != "success":
            raise ApiError(
                code="API_ERROR",
                message=data.get("error") or "query failed",
                http_status=resp.status_code,
                service=self.name,
                metric=metric,
            )
        result = (data.get("data") or {}).get("result") or []
        if not result:
            return []
        samples: List[Sample] = []
        # 聚合查询只返回一条序列
        for ts, raw in result[0].get("values") or []:
            value = float(raw)
            if math.isfinite(value):
                samples.append(Sample(ts=float(ts), value=value))
        return samples


class StaticMetricsBackend:
    """进程内替身：按时间戳从预置时间线中截取窗口。"""

    name = "static-metrics"

    def __init__(self, series: Optional[Dict[str, List[Sample]]] = None):
        self._lock = threading.Lock()
        self._series: Dict[str, List[Sample]] = {k: list(v) for k, v in (series or {}).items()}

    def add_samples(self, metric: str, samples: List[Sample]) -> None:
        with self._lock:
            self._series.setdefault(metric, []).extend(samples)

    def fetch_window(self, namespace: str, deployment: str, start: float, end: float) -> Dict[str, List[Sample]]:
        with self._lock:
            window = {
                metric: [s for s in samples if start <= s.ts < end]
                for metric, samples in self._series.items()
            }
        return {metric: samples for metric, samples in window.items() if samples}

# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Trial-wide statistics and a natural-language summary of them."""

import json
import logging
import types

import httpx
from pydantic import Field

from .config import Settings
from .gateway.base import PersistenceGateway
from .models import CamelModel

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a clinical trial analyst focused on identifying patterns and trends. "
    "Analyze the trial data focusing on: \n"
    "1. Outlier frequency and patterns\n"
    "2. Severity trends\n"
    "3. Patient enrollment insights\n"
    "Respond with JSON containing:\n"
    "- summary: a detailed analysis highlighting patterns and trends\n"
    "- riskLevel: 'low' if outliers < 10% of patients and avg severity < 4, "
    "'medium' if outliers 10-20% or avg severity 4-6, "
    "'high' if outliers > 20% or avg severity > 6"
)


class TrialStatistics(CamelModel):
    patient_count: int
    avg_severity: float
    outlier_count: int
    recent_outliers: list[str] = Field(
        default_factory=list, description="Messages of the latest anomalies."
    )

    @property
    def outlier_percentage(self) -> float:
        if not self.patient_count:
            return 0.0
        return self.outlier_count / self.patient_count * 100


class TrialSummary(CamelModel):
    summary: str
    risk_level: str


async def collect_statistics(gateway: PersistenceGateway, recent: int = 5) -> TrialStatistics:
    """Gather the aggregates shown on the monitoring dashboard."""
    outliers = await gateway.recent_outliers(recent)
    return TrialStatistics(
        patient_count=await gateway.count_patients(),
        avg_severity=await gateway.average_symptom_severity(),
        outlier_count=await gateway.count_outlier_logs(),
        recent_outliers=[o.message for o in outliers],
    )


def assess_risk(stats: TrialStatistics) -> str:
    """Grade the trial with the same bands the summary model is asked to use."""
    pct = stats.outlier_percentage
    if pct > 20 or stats.avg_severity > 6:
        return "high"
    if pct >= 10 or stats.avg_severity >= 4:
        return "medium"
    return "low"


def build_prompt(stats: TrialStatistics) -> str:
    events = "\n".join(f"{i}. {message}" for i, message in enumerate(stats.recent_outliers, 1))
    return (
        "Analyze this trial data and identify trends:\n\n"
        "Statistical Overview:\n"
        f"- Total Patients: {stats.patient_count}\n"
        f"- Average Symptom Severity: {stats.avg_severity:.1f} (scale 0-10)\n"
        f"- Number of Outliers: {stats.outlier_count}\n"
        f"- Outlier Percentage: {stats.outlier_percentage:.1f}%\n\n"
        "Recent Outlier Events (for trend analysis):\n"
        f"{events or 'None'}\n\n"
        "Provide a comprehensive analysis of patterns, trends, and potential concerns."
    )


class TrialSummarizer:
    """Asks an OpenAI-compatible chat completions API to summarize trial statistics.

    A client passed in stays open; one created here is closed by `aclose`
    or on leaving the `async with` block.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": "py-ingest-trials/0.1.0"},
            timeout=settings.summary_timeout_s,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "TrialSummarizer":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def completions_url(self) -> str:
        return f"{self.settings.summary_base_url.rstrip('/')}/chat/completions"

    def local_summary(self, stats: TrialStatistics) -> TrialSummary:
        """Summary composed without the remote service."""
        summary = (
            f"{stats.patient_count} patients enrolled with an average symptom severity of "
            f"{stats.avg_severity:.1f}. {stats.outlier_count} outliers logged "
            f"({stats.outlier_percentage:.1f}% of patients)."
        )
        if stats.recent_outliers:
            summary += " Most recent: " + "; ".join(stats.recent_outliers) + "."
        return TrialSummary(summary=summary, risk_level=assess_risk(stats))

    async def summarize(self, stats: TrialStatistics) -> TrialSummary:
        """Summarize the trial.

        Falls back to a local summary when no API key is configured. If the
        service fails, the summary says so and the risk level is 'unknown'.
        """
        if not self.settings.summary_api_key:
            logger.info("No summary API key configured; using local summary.")
            return self.local_summary(stats)

        payload = {
            "model": self.settings.summary_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(stats)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.7,
        }
        headers = {"Authorization": f"Bearer {self.settings.summary_api_key}"}
        try:
            response = await self.client.post(self.completions_url, json=payload, headers=headers)
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
            return TrialSummary.model_validate(json.loads(content))
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.error("Summary service request failed: %s", e)
            return TrialSummary(
                summary=f"AI analysis temporarily unavailable: {e}", risk_level="unknown",
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Summary service returned an unexpected response: %s", e)
            return TrialSummary(
                summary=f"AI analysis temporarily unavailable: {e}", risk_level="unknown",
            )

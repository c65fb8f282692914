"""
Explanation provider.

The production provider calls the Anthropic Messages API and expects a JSON
object with ``summary``, ``reasons`` and ``warnings``.
"""
import json
from dataclasses import dataclass, field
from typing import Optional, Protocol

import anthropic

from backend.core.config import settings
from backend.core.exceptions import UpstreamUnavailableError

from engine.matching.models import AnnouncementData, OrganizationProfile


@dataclass
class ExplanationContext:
    """Everything the provider may see about one match."""

    profile: OrganizationProfile
    announcement: AnnouncementData
    score: int
    bonus: int
    breakdown: dict[str, int]
    reason_codes: list[str]


@dataclass
class ProviderResponse:
    summary: str
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


class ExplanationProvider(Protocol):
    def generate(self, context: ExplanationContext) -> ProviderResponse: ...


def build_prompt(context: ExplanationContext) -> str:
    profile = context.profile
    announcement = context.announcement
    deadline = announcement.deadline.date().isoformat() if announcement.deadline else "not published"
    trl_range = f"{announcement.min_trl if announcement.min_trl is not None else '-'}" \
        f"..{announcement.max_trl if announcement.max_trl is not None else '-'}"

    return f"""You are an expert advisor on government R&D funding programs.
Explain to the applicant why this funding announcement matches their organization.

## Organization
- Type: {profile.type.value}
- Industry sector: {profile.industry_sector or 'not provided'}
- Technology readiness level: {profile.technology_readiness_level if profile.technology_readiness_level is not None else 'not provided'}
- Prior R&D experience: {'yes' if profile.rd_experience else 'no'}
- Research focus areas: {', '.join(profile.research_focus_areas) or 'not provided'}

## Announcement
- Title: {announcement.title}
- Category: {announcement.category or 'not provided'}
- Required TRL range: {trl_range}
- Eligible organization types: {', '.join(announcement.target_types) or 'any'}
- Deadline: {deadline}

## Scoring
- Score: {context.score}/100 (bonus {context.bonus})
- Points per criterion: {json.dumps(context.breakdown, sort_keys=True)}
- Reason codes: {', '.join(context.reason_codes)}

Return ONLY a JSON object with this structure:
{{"summary": "<two sentences>", "reasons": ["<strength>", ...], "warnings": ["<risk or gap>", ...]}}

Use at most 4 reasons and 3 warnings. Base every statement on the data above."""


def parse_response(text: str) -> tuple[str, list[str], list[str]]:
    """Parse the provider's JSON payload, tolerating a fenced code block."""
    payload = text.strip()
    if payload.startswith("```"):
        payload = payload.strip("`")
        if payload.startswith("json"):
            payload = payload[4:]
    data = json.loads(payload)
    summary = str(data["summary"]).strip()
    if not summary:
        raise ValueError("empty summary")
    reasons = [str(r) for r in data.get("reasons", []) if str(r).strip()]
    warnings = [str(w) for w in data.get("warnings", []) if str(w).strip()]
    return summary, reasons, warnings


class AnthropicExplanationProvider:
    """Claude-backed explanation provider."""

    def __init__(self, client: Optional[anthropic.Anthropic] = None):
        self.client = client or anthropic.Anthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.llm_request_timeout_seconds,
            max_retries=0,
        )

    def generate(self, context: ExplanationContext) -> ProviderResponse:
        """
        Generate an explanation.

        Raises:
            UpstreamUnavailableError: API failure or unparseable output.
        """
        try:
            response = self.client.messages.create(
                model=settings.llm_model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                messages=[
                    {"role": "user", "content": build_prompt(context)},
                ],
            )
        except anthropic.APIError as e:
            raise UpstreamUnavailableError(f"explanation provider error: {e}") from e

        try:
            summary, reasons, warnings = parse_response(response.content[0].text)
        except (IndexError, KeyError, ValueError, AttributeError) as e:
            raise UpstreamUnavailableError(f"unparseable explanation: {e}") from e

        return ProviderResponse(
            summary=summary,
            reasons=reasons,
            warnings=warnings,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

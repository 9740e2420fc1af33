from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from careops_router.chain import Policy
from careops_router.dispatch import (
    CancellationToken,
    DispatchOrchestrator,
    Failure,
    InvocationResult,
)
from careops_router.errors import ErrorKind
from careops_router.validation import ResponseShape

logger = logging.getLogger("uvicorn.error")

BUSINESS_TYPES = (
    "Salon & Spa",
    "Health & Wellness",
    "Fitness & Gym",
    "Medical Practice",
    "Dental Clinic",
    "Consulting",
    "Tutoring & Education",
    "Pet Care",
    "Home Services",
    "Legal Services",
    "Photography",
    "Other",
)

QUOTA_EXHAUSTED_MESSAGE = (
    "AI quota temporarily exceeded. Please wait a minute and try again."
)


@dataclass(slots=True)
class AssistantResult:
    body: dict[str, Any]
    failure_kind: ErrorKind | None = None


# Onboarding


class ServiceOffering(ResponseShape):
    name: str | None = None
    duration: float | None = Field(default=None, description="minutes")
    price: float | None = None
    description: str | None = None


class AvailabilityWindow(ResponseShape):
    day_of_week: int | None = Field(default=None, description="0=Sunday..6=Saturday")
    start_time: str | None = None
    end_time: str | None = None
    is_available: bool | None = None


class BookingPreferences(ResponseShape):
    buffer_time: float | None = None
    advance_booking_days: float | None = None
    auto_confirm: bool | None = None


class BusinessProfile(ResponseShape):
    business_type: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    website: str | None = None
    services: list[ServiceOffering] | None = None
    availability: list[AvailabilityWindow] | None = None
    booking_preferences: BookingPreferences | None = None


class OnboardingReply(ResponseShape):
    success: bool
    needs_followup: bool
    followup_questions: list[str] | None = None
    summary: str | None = None
    data: BusinessProfile


ONBOARDING_INSTRUCTION = f"""You are CareOps AI Assistant.
Extract business data from user descriptions into the required JSON format.

RULES:
1. Set "success" to true if you successfully processed the input.
2. Set "needs_followup" to true if critical info (Business Type or Services) is missing.
3. Map business types to: {", ".join(BUSINESS_TYPES)}.
4. Services must include name, duration (mins), and price (number only).
5. Availability must always include all 7 days (0=Sunday...6=Saturday)."""


def _failure_kind(result: InvocationResult) -> ErrorKind | None:
    return result.kind if isinstance(result, Failure) else None


async def process_onboarding_input(
    router: DispatchOrchestrator,
    user_input: str,
    history: Sequence[Mapping[str, Any]] | None = None,
    cancel: CancellationToken | None = None,
) -> AssistantResult:
    result = await router.dispatch(
        history,
        user_input,
        Policy.QUALITY_FIRST,
        OnboardingReply,
        cancel,
        system_instruction=ONBOARDING_INSTRUCTION,
    )
    if result.ok:
        return AssistantResult(body=result.payload.model_dump())

    kind = _failure_kind(result)
    logger.warning("onboarding_failed kind=%s", kind.value if kind else None)
    if kind is ErrorKind.EXHAUSTED_ALL_ENDPOINTS:
        return AssistantResult(
            body={
                "success": False,
                "error": QUOTA_EXHAUSTED_MESSAGE,
                "needs_followup": True,
                "followup_questions": [
                    "Please wait about a minute and then try sending your message again."
                ],
            },
            failure_kind=kind,
        )
    return AssistantResult(
        body={
            "success": False,
            "error": "AI processing was interrupted",
            "needs_followup": True,
            "followup_questions": [
                "Something went wrong. Could you try describing your business again?"
            ],
        },
        failure_kind=kind,
    )


# Smart reply


class SmartReply(ResponseShape):
    suggested_reply: str


def smart_reply_instruction(workspace_name: str) -> str:
    return f"""You are a professional customer support assistant for {workspace_name}.
Your goal is to draft a polite, professional reply based on the user's input and history.

RULES:
1. Use the company name "{workspace_name}" explicitly. NEVER use placeholders like "[Your Company Name]" or "[Your Name]".
2. Add a single space after every period or punctuation mark. Do not run sentences together.
3. Keep it friendly, concise, and helpful.
4. Output strict JSON with "suggested_reply"."""


async def generate_smart_reply(
    router: DispatchOrchestrator,
    draft: str,
    history: Sequence[Mapping[str, Any]],
    workspace_name: str = "CareOps",
    cancel: CancellationToken | None = None,
) -> AssistantResult:
    result = await router.dispatch(
        history,
        f'Draft a reply based on this intent: "{draft}".',
        Policy.QUALITY_FIRST,
        SmartReply,
        cancel,
        system_instruction=smart_reply_instruction(workspace_name),
    )
    if result.ok:
        return AssistantResult(
            body={"success": True, "suggestion": result.payload.suggested_reply}
        )
    return AssistantResult(
        body={"success": False, "error": "Failed to generate reply"},
        failure_kind=_failure_kind(result),
    )


# Dashboard insights


class DashboardInsights(ResponseShape):
    insights: list[str]


DASHBOARD_INSIGHTS_INSTRUCTION = """You are a business analytics expert.
Analyze the provided JSON data about a service business (bookings, revenue, inventory, etc.) and generate 3-4 actionable insights.

Keep insights short, actionable, and encouraging. Use emojis occasionally."""


async def generate_dashboard_insights(
    router: DispatchOrchestrator,
    business_data: Mapping[str, Any],
    cancel: CancellationToken | None = None,
) -> AssistantResult:
    data_string = json.dumps(business_data, ensure_ascii=False, default=str)
    result = await router.dispatch(
        [],
        f"Analyze this business data: {data_string}",
        Policy.QUALITY_FIRST,
        DashboardInsights,
        cancel,
        system_instruction=DASHBOARD_INSIGHTS_INSTRUCTION,
    )
    if result.ok:
        return AssistantResult(
            body={"success": True, "insights": result.payload.insights}
        )
    return AssistantResult(
        body={"success": False, "error": "Failed to generate insights"},
        failure_kind=_failure_kind(result),
    )


# Booking assistant

BookingAction = Literal[
    "none", "select_service", "select_time", "collect_info", "summarize", "confirm"
]


class BookingDraft(ResponseShape):
    model_config = ConfigDict(populate_by_name=True)

    service_id: str | None = Field(default=None, alias="serviceId")
    date: str | None = Field(default=None, description="YYYY-MM-DD")
    time: str | None = Field(default=None, description="HH:MM AM/PM")
    customer_name: str | None = Field(default=None, alias="customerName")
    customer_email: str | None = Field(default=None, alias="customerEmail")
    customer_phone: str | None = Field(default=None, alias="customerPhone")
    customer_note: str | None = Field(default=None, alias="customerNote")


class BookingReply(ResponseShape):
    reply: str
    action: BookingAction
    data: BookingDraft


class BookingContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    workspace_name: str = Field(default="CareOps", alias="workspaceName")
    today: str | None = None
    services: list[dict[str, Any]] = Field(default_factory=list)
    availability: list[dict[str, Any]] = Field(default_factory=list)


def calendar_context(today: date, days: int = 14) -> str:
    lines = [f"CALENDAR (next {days} days):"]
    for offset in range(days):
        lines.append((today + timedelta(days=offset)).strftime("%a %b %d %Y"))
    return "\n".join(lines)


def booking_instruction(context: BookingContext, today: date | None = None) -> str:
    current = today or date.today()
    services = [
        {"id": item.get("id"), "name": item.get("name"), "price": item.get("price")}
        for item in context.services
    ]
    hours = [
        {
            "day": item.get("day_of_week"),
            "start": item.get("start_time"),
            "end": item.get("end_time"),
        }
        for item in context.availability
        if item.get("is_available")
    ]
    return f"""You are a receptionist for {context.workspace_name}. Help customer book.

TODAY: {context.today or current.isoformat()}
{calendar_context(current)}
SERVICES: {json.dumps(services, ensure_ascii=False)}
HOURS: {json.dumps(hours, ensure_ascii=False)}

FLOW:
1. Ask which service -> action="select_service"
2. Ask date/time -> action="select_time", include serviceId+date+time in data
3. Ask name, email, phone -> action="collect_info", include all prior data
4. Summarize & ask "Is that correct?" -> action="summarize", include ALL data
5. User says "yes/correct" -> action="confirm", include ALL data

RULES:
- Reply in 1 SHORT sentence (spoken aloud)
- Always include ALL collected data in the data field
- action="confirm" ONLY after user affirms the summary
- Output ONLY the JSON object, nothing else"""


async def process_booking_assistant(
    router: DispatchOrchestrator,
    message: str,
    history: Sequence[Mapping[str, Any]] | None,
    context: BookingContext,
    cancel: CancellationToken | None = None,
    *,
    today: date | None = None,
) -> AssistantResult:
    result = await router.dispatch(
        history,
        message,
        Policy.LATENCY_FIRST,
        BookingReply,
        cancel,
        system_instruction=booking_instruction(context, today=today),
        max_output_tokens=512,
    )
    if result.ok:
        reply = result.payload
        logger.info(
            "booking_assistant_reply action=%s endpoint=%s",
            reply.action,
            result.used_endpoint.label,
        )
        return AssistantResult(body={"success": True, **reply.model_dump(by_alias=True)})
    return AssistantResult(
        body={"success": False, "error": "Failed to process booking request"},
        failure_kind=_failure_kind(result),
    )

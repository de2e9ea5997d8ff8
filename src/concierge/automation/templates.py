"""Catalog of predefined rule bodies users can instantiate.

Template bodies use the same shape as a rule-creation payload minus
``user_id``. ``send_email`` actions address ``{{recipient}}``; pass
``recipient`` in the customizations to bake in an address. Event-driven
rules may leave it to be resolved from the trigger data at run time, but
scheduled rules fire with no such data and must be given one.
"""

from __future__ import annotations

import copy
from typing import Any, Mapping

from concierge.core.errors import ValidationError

RECIPIENT_PLACEHOLDER = "{{recipient}}"

# Trigger types whose runs carry no event data to address an email from.
_TIMER_TRIGGERS = frozenset({"schedule", "time_based"})


def _email(subject: str, template: str, title: str, message: str, **extra: Any) -> dict[str, Any]:
    return {
        "type": "send_email",
        "config": {
            "to": RECIPIENT_PLACEHOLDER,
            "subject": subject,
            "template": template,
            "data": {"title": title, "message": message, **extra},
        },
    }


def _daily(cron: str) -> dict[str, Any]:
    return {"type": "schedule", "conditions": {"cron": cron}}


AUTOMATION_TEMPLATES: dict[str, dict[str, Any]] = {
    # Medical
    "medical_appointment_reminder": {
        "name": "Medical Appointment Reminder",
        "description": "Sends reminders for medical appointments",
        "trigger": _daily("0 9 * * *"),
        "actions": [
            _email(
                "Upcoming Medical Appointment", "medical_reminder",
                "Medical Appointment Reminder",
                "You have a medical appointment coming up. Please check your calendar for details.",
            ),
        ],
    },
    "doctor_appointment_detection": {
        "name": "Doctor Appointment Detection",
        "description": "Automatically detects and schedules doctor appointments from emails",
        "trigger": {
            "type": "email",
            "conditions": {"patterns": ["appointment", "doctor", "medical", "physical", "checkup"]},
        },
        "actions": [
            {
                "type": "conditional",
                "config": {
                    "condition": {"field": "subject", "operator": "contains", "value": "appointment"},
                    "true_actions": [
                        {
                            "type": "create_calendar_event",
                            "config": {
                                "title": "Medical Appointment - {{doctor_name}}",
                                "start": "{{appointment_date}}",
                                "end": "{{appointment_end_date}}",
                                "location": "{{doctor_address}}",
                                "description": "Medical appointment with {{doctor_name}}",
                            },
                        },
                        _email(
                            "Medical Appointment Scheduled", "appointment_confirmation",
                            "Medical Appointment Confirmed", "",
                            doctor="{{doctor_name}}", date="{{appointment_date}}",
                            location="{{doctor_address}}",
                        ),
                    ],
                },
            },
        ],
    },
    # Meetings
    "meeting_reminder": {
        "name": "Meeting Reminder",
        "description": "Sends reminders for business meetings",
        "trigger": _daily("0 8 * * *"),
        "actions": [
            _email("Daily Meeting Schedule", "meeting_reminder", "Today's Meetings",
                   "Here are your meetings for today."),
        ],
    },
    "meeting_follow_up": {
        "name": "Meeting Follow-up",
        "description": "Sends follow-up emails after meetings",
        "trigger": {
            "type": "calendar_event",
            "conditions": {
                "match": "all",
                "fields": [
                    {"field": "event_type", "operator": "equals", "value": "meeting"},
                    {"field": "action", "operator": "equals", "value": "ended"},
                ],
            },
        },
        "actions": [
            {"type": "wait", "config": {"duration_ms": 300_000}},
            _email("Meeting Follow-up", "meeting_followup", "Meeting Follow-up",
                   "Thank you for the meeting. Here are the next steps."),
        ],
    },
    # Personal
    "birthday_reminder": {
        "name": "Birthday Reminder",
        "description": "Sends birthday reminders",
        "trigger": _daily("0 10 * * *"),
        "actions": [
            _email("Birthday Reminders", "birthday_reminder", "Birthday Reminders",
                   "Don't forget these upcoming birthdays!"),
        ],
    },
    "travel_preparation": {
        "name": "Travel Preparation",
        "description": "Prepares for upcoming travel",
        "trigger": {
            "type": "calendar_event",
            "conditions": {
                "match": "all",
                "fields": [
                    {"field": "event_type", "operator": "equals", "value": "travel"},
                    {"field": "days_until", "operator": "less_than", "value": 8},
                ],
            },
        },
        "actions": [
            _email("Travel Preparation Checklist", "travel_preparation", "Travel Preparation",
                   "Your trip is coming up! Here's your preparation checklist."),
        ],
    },
    # Health
    "medication_reminder": {
        "name": "Medication Reminder",
        "description": "Sends medication reminders",
        "trigger": _daily("0 8,14,20 * * *"),
        "actions": [
            _email("Medication Reminder", "medication_reminder", "Time for Your Medication",
                   "Don't forget to take your medication."),
        ],
    },
    "exercise_reminder": {
        "name": "Exercise Reminder",
        "description": "Sends exercise reminders",
        "trigger": _daily("0 18 * * 1,3,5"),
        "actions": [
            _email("Exercise Time!", "exercise_reminder", "Time to Exercise",
                   "Your scheduled workout time is here!"),
        ],
    },
    # Finance
    "bill_reminder": {
        "name": "Bill Reminder",
        "description": "Sends bill payment reminders",
        "trigger": _daily("0 9 1 * *"),
        "actions": [
            _email("Monthly Bill Reminder", "bill_reminder", "Monthly Bills Due",
                   "Don't forget to pay your monthly bills."),
        ],
    },
    "investment_check": {
        "name": "Investment Check",
        "description": "Sends investment portfolio reminders",
        "trigger": _daily("0 10 1 * *"),
        "actions": [
            _email("Monthly Investment Review", "investment_reminder", "Investment Portfolio Review",
                   "Time to review your investment portfolio."),
        ],
    },
}

_CUSTOMIZABLE = ("name", "description", "enabled", "trigger", "actions")


def list_templates() -> list[dict[str, Any]]:
    return [{"id": tid, "template": copy.deepcopy(body)} for tid, body in AUTOMATION_TEMPLATES.items()]


def get_template(template_id: str) -> dict[str, Any] | None:
    body = AUTOMATION_TEMPLATES.get(template_id)
    return copy.deepcopy(body) if body is not None else None


def _fill_recipient(actions: list[dict[str, Any]], recipient: str) -> None:
    for action in actions:
        config = action.get("config", {})
        if action.get("type") == "send_email" and config.get("to") == RECIPIENT_PLACEHOLDER:
            config["to"] = recipient
        for branch in ("true_actions", "false_actions"):
            _fill_recipient(config.get(branch, []), recipient)


def _needs_recipient(actions: list[dict[str, Any]]) -> bool:
    for action in actions:
        config = action.get("config", {})
        if action.get("type") == "send_email" and config.get("to") == RECIPIENT_PLACEHOLDER:
            return True
        if any(_needs_recipient(config.get(branch, [])) for branch in ("true_actions", "false_actions")):
            return True
    return False


def build_rule_spec(
    user_id: str,
    template_id: str,
    customizations: Mapping[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Merge *customizations* over a template into a rule-creation payload.

    Top-level keys replace the template's; ``recipient`` fills the email
    address of every ``send_email`` action. Returns ``None`` for an unknown
    template; raises ``ValidationError`` when a scheduled rule would be left
    with no address to send to.
    """
    body = get_template(template_id)
    if body is None:
        return None
    customizations = dict(customizations or {})
    for key in _CUSTOMIZABLE:
        if key in customizations:
            body[key] = copy.deepcopy(customizations[key])
    recipient = customizations.get("recipient")
    if recipient:
        _fill_recipient(body["actions"], recipient)
    elif body["trigger"].get("type") in _TIMER_TRIGGERS and _needs_recipient(body["actions"]):
        raise ValidationError(f"template '{template_id}' sends email on a schedule and needs a recipient")
    body.setdefault("enabled", True)
    return {**body, "user_id": user_id}

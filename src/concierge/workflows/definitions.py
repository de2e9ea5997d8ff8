"""Predefined workflows."""

from __future__ import annotations

from concierge.workflows.models import StepType, WorkflowDefinition, WorkflowStep

SCHEDULE_APPOINTMENT = WorkflowDefinition(
    id="schedule-appointment",
    name="Schedule Appointment",
    description="Schedule appointments requested by email or voicemail, after user approval",
    steps=(
        WorkflowStep(id="trigger", type=StepType.TRIGGER, name="Receive Request"),
        WorkflowStep(id="extract", type=StepType.EXTRACT, name="Extract Appointment Details"),
        WorkflowStep(
            id="approval",
            type=StepType.APPROVAL,
            name="Confirm Appointment",
            config={
                "message": "Book '{{extract.title}}' on {{extract.date}} at {{extract.time}}?",
            },
        ),
        WorkflowStep(
            id="calendar",
            type=StepType.CALENDAR,
            name="Book Appointment",
            config={
                "title": "{{extract.title}}",
                "date": "{{extract.date}}",
                "time": "{{extract.time}}",
                "duration": "{{extract.duration}}",
                "location": "{{extract.location}}",
                "attendee": "{{extract.attendee}}",
                "event_type": "appointment",
            },
        ),
        WorkflowStep(
            id="notify",
            type=StepType.NOTIFY,
            name="Confirm Booking",
            config={
                "channel": "push",
                "subject": "Appointment scheduled",
                "message": "'{{extract.title}}' is booked for {{calendar.start}}.",
            },
        ),
    ),
)

NOTIFY_ONLY = WorkflowDefinition(
    id="notify-only",
    name="Notify Only",
    description="Forward an inbound event to the user without taking action",
    steps=(
        WorkflowStep(id="trigger", type=StepType.TRIGGER, name="Receive Event"),
        WorkflowStep(
            id="notify",
            type=StepType.NOTIFY,
            name="Notify User",
            config={
                "channel": "push",
                "subject": "{{trigger.subject}}",
                "message": "New {{trigger.source}} ({{trigger.priority}}): {{trigger.subject}}",
            },
        ),
        WorkflowStep(id="end", type=StepType.END, name="Done"),
    ),
)

PREDEFINED_WORKFLOWS: dict[str, WorkflowDefinition] = {
    w.id: w for w in (SCHEDULE_APPOINTMENT, NOTIFY_ONLY)
}

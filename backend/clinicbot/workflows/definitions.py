# /clinicbot/workflows/definitions.py

"""
Dialogue flow definitions.

This module defines flows as pure data (no logic). Each flow is an ordered
tuple of steps; the first step is the initial state and completion is
implicit after the last step's input is accepted, at which point the flow's
`completion` action runs.

Each step defines:
- prompt: string-table key of the text shown to the user
- kind: input / selection / confirmation / info
- rules: explicit validation rules, run in order
- options / options_source: the static or dynamically resolved choices
- data_key: where the accepted value is stored in ConversationState.data
"""

from typing import Dict

from clinicbot.models.flow import (
    Flow,
    OptionSource,
    RuleKind,
    Step,
    StepKind,
    StepOption,
    ValidationRule,
)

BOOKING = "BOOKING"
CANCELLATION = "CANCELLATION"

BOOKING_FLOW = Flow(
    id=BOOKING,
    name="Запись на прием",
    completion="create_booking",
    start_intents=("BOOK_APPOINTMENT",),
    steps=(
        Step(
            id="COLLECT_NAME",
            prompt="PROMPT_COLLECT_NAME",
            kind=StepKind.INPUT,
            rules=(ValidationRule(kind=RuleKind.REQUIRED, message="VALIDATION_NAME_REQUIRED"),),
            data_key="patient_name",
            profile_field="name",
        ),
        Step(
            id="COLLECT_PHONE",
            prompt="PROMPT_COLLECT_PHONE",
            kind=StepKind.INPUT,
            rules=(
                ValidationRule(kind=RuleKind.REQUIRED, message="VALIDATION_PHONE_REQUIRED"),
                ValidationRule(kind=RuleKind.PHONE, message="VALIDATION_PHONE_FORMAT"),
            ),
            data_key="patient_phone",
            profile_field="phone",
        ),
        Step(
            id="SELECT_SERVICE",
            prompt="PROMPT_SELECT_SERVICE",
            kind=StepKind.SELECTION,
            rules=(ValidationRule(kind=RuleKind.OPTION, message="VALIDATION_OPTION"),),
            options_source=OptionSource.SERVICES,
            data_key="service_code",
        ),
        Step(
            id="SELECT_DOCTOR",
            prompt="PROMPT_SELECT_DOCTOR",
            kind=StepKind.SELECTION,
            rules=(ValidationRule(kind=RuleKind.OPTION, message="VALIDATION_OPTION"),),
            options_source=OptionSource.DOCTORS,
            data_key="doctor_id",
        ),
        Step(
            id="SELECT_DATE",
            prompt="PROMPT_SELECT_DATE",
            kind=StepKind.SELECTION,
            rules=(ValidationRule(kind=RuleKind.OPTION, message="VALIDATION_OPTION"),),
            options_source=OptionSource.DATES,
            data_key="selected_date",
        ),
        Step(
            id="SELECT_TIME",
            prompt="PROMPT_SELECT_TIME",
            kind=StepKind.SELECTION,
            rules=(ValidationRule(kind=RuleKind.OPTION, message="VALIDATION_OPTION"),),
            options_source=OptionSource.TIMES,
            data_key="selected_time",
        ),
        Step(
            id="CONFIRMATION",
            prompt="PROMPT_CONFIRMATION",
            kind=StepKind.CONFIRMATION,
            options=(
                StepOption(id="confirm", text="OPTION_CONFIRM", value="confirm"),
                StepOption(id="cancel", text="OPTION_CANCEL", value="cancel"),
            ),
        ),
    ),
)

CANCELLATION_FLOW = Flow(
    id=CANCELLATION,
    name="Отмена записи",
    completion="cancel_appointment",
    start_intents=("CANCEL_APPOINTMENT",),
    steps=(
        Step(
            id="SELECT_APPOINTMENT",
            prompt="PROMPT_SELECT_APPOINTMENT",
            kind=StepKind.SELECTION,
            rules=(ValidationRule(kind=RuleKind.OPTION, message="VALIDATION_OPTION"),),
            options_source=OptionSource.APPOINTMENTS,
            data_key="appointment_id",
            empty_prompt="NO_APPOINTMENTS",
        ),
        Step(
            id="CONFIRM_CANCELLATION",
            prompt="PROMPT_CONFIRM_CANCELLATION",
            kind=StepKind.CONFIRMATION,
            options=(
                StepOption(id="confirm", text="OPTION_CONFIRM_CANCELLATION", value="confirm"),
                StepOption(id="cancel", text="OPTION_KEEP_APPOINTMENT", value="cancel"),
            ),
        ),
    ),
)

FLOWS: Dict[str, Flow] = {
    BOOKING: BOOKING_FLOW,
    CANCELLATION: CANCELLATION_FLOW,
}

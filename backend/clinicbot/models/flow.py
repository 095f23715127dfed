# /clinicbot/models/flow.py

from enum import Enum
from typing import Callable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class StepKind(str, Enum):
    INPUT = "input"
    SELECTION = "selection"
    CONFIRMATION = "confirmation"
    INFO = "info"


class RuleKind(str, Enum):
    REQUIRED = "required"
    PHONE = "phone"
    CUSTOM = "custom"
    OPTION = "option"


class OptionSource(str, Enum):
    STATIC = "static"
    SERVICES = "services"
    DOCTORS = "doctors"
    DATES = "dates"
    TIMES = "times"
    APPOINTMENTS = "appointments"


class StepOption(BaseModel):
    id: str
    text: str
    value: str
    description: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ValidationRule(BaseModel):
    """A single explicit rule; `message` is a key into the string table."""
    kind: RuleKind
    message: str
    predicate: Optional[Callable[[str], bool]] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Step(BaseModel):
    """
    Immutable definition of one prompt/validate/transition unit.
    """
    id: str
    prompt: str = Field(..., description="String table key of the prompt template")
    kind: StepKind
    rules: Tuple[ValidationRule, ...] = ()
    options: Tuple[StepOption, ...] = ()
    options_source: OptionSource = OptionSource.STATIC
    data_key: Optional[str] = Field(default=None, description="Key under which the accepted value is stored")
    profile_field: Optional[str] = Field(default=None, description="Patient attribute updated on accept")
    empty_prompt: Optional[str] = Field(default=None, description="String key used when dynamic options are empty")

    model_config = ConfigDict(frozen=True)


class Flow(BaseModel):
    id: str
    name: str
    steps: Tuple[Step, ...]
    completion: str = Field(..., description="Name of the completion action run after the last step")
    start_intents: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


class RenderedStep(BaseModel):
    """A step ready to be shown: resolved prompt text and option set."""
    flow_id: str
    step_id: str
    kind: StepKind
    text: str
    options: List[StepOption] = Field(default_factory=list)
    empty: bool = False

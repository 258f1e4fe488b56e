"""
Form plan and built-in locator strategies for the registration dialog

Candidate strategies are listed per logical control from fast/specific to
slow/generic. The strategy cache reorders them at runtime as the target's
layout shifts, so this list only seeds the search.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple


class StepAction(Enum):
    """What to do with a located control"""
    CHOOSE = "choose"    # pick one of the offered options via the name resolver
    SELECT = "select"    # select an option named by an item attribute
    FILL = "fill"        # type an item attribute into the control
    CLICK = "click"


@dataclass(frozen=True)
class FormStep:
    """One control interaction performed while selecting"""
    control_id: str
    action: StepAction
    attribute: Optional[str] = None
    required: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "FormStep":
        return cls(
            control_id=data["control"],
            action=StepAction(data.get("action", "click")),
            attribute=data.get("attribute"),
            required=bool(data.get("required", True)),
        )


SUBMIT_CONTROL = "submit"


class DefaultControls:
    """Known strategies for the registration dialog controls"""

    OPTION = [
        'mat-dialog-container mat-select[formcontrolname="option"]',
        'mat-dialog-container mat-select[placeholder*="Option"]',
        'select[name="option"]',
        '[role="combobox"][aria-label*="option" i]',
        'mat-dialog-container mat-select',
        'form select',
    ]

    ROLE = [
        'mat-dialog-container mat-select[formcontrolname="role"]',
        'mat-select[placeholder*="Role"]',
        'select[name="role"]',
        '[role="combobox"][aria-label*="role" i]',
    ]

    VISIBILITY = [
        'mat-dialog-container mat-select[formcontrolname="visibility"]',
        'mat-select[placeholder*="Visibility"]',
        'select[name="visibility"]',
    ]

    START_DATE = [
        'mat-dialog-container input[formcontrolname="startDate"]',
        'input[name="start_date"]',
        'input[type="date"]',
    ]

    SUBMIT = [
        'mat-dialog-container button:has-text("Save")',
        'mat-dialog-container button:has-text("Register")',
        'button[type="submit"]',
        'input[type="submit"]',
        'mat-dialog-container button.mat-primary',
    ]


DEFAULT_STEPS: Tuple[FormStep, ...] = (
    FormStep("option", StepAction.CHOOSE),
    FormStep("role", StepAction.SELECT, attribute="role", required=False),
    FormStep("visibility", StepAction.SELECT, attribute="visibility", required=False),
    FormStep("start_date", StepAction.FILL, attribute="start_date", required=False),
)


class ControlCatalog:
    """Ordered candidate strategies per control, plus the steps that use them"""

    def __init__(self, strategies: Optional[Dict[str, Sequence[str]]] = None,
                 steps: Optional[Sequence[FormStep]] = None):
        self._strategies: Dict[str, List[str]] = {
            "option": list(DefaultControls.OPTION),
            "role": list(DefaultControls.ROLE),
            "visibility": list(DefaultControls.VISIBILITY),
            "start_date": list(DefaultControls.START_DATE),
            SUBMIT_CONTROL: list(DefaultControls.SUBMIT),
        }
        # Configured strategies go first, built-ins stay as the generic tail
        for control_id, specs in (strategies or {}).items():
            builtin = self._strategies.get(control_id, [])
            self._strategies[control_id] = list(specs) + [s for s in builtin if s not in specs]
        self.steps: Tuple[FormStep, ...] = tuple(steps) if steps is not None else DEFAULT_STEPS

    def candidates(self, control_id: str) -> List[str]:
        return list(self._strategies.get(control_id, []))

    def control_ids(self) -> List[str]:
        return list(self._strategies)

from typing import Any

from .form_schema import STEP_COUNT, STEPS


class WizardStepError(ValueError):
    """Raised when a step outside 1..step_count is requested."""


class StepWizard:
    """Linear 1..N step tracker. Steps gate their own "next"; the wizard does not validate."""

    def __init__(self, current_step: int = 1, step_count: int = STEP_COUNT):
        self.step_count = step_count
        self.current_step = 1
        self.completed = False
        self.jump_to(current_step)

    def jump_to(self, step: int) -> None:
        if not 1 <= int(step) <= self.step_count:
            raise WizardStepError(f"Step must be between 1 and {self.step_count}")
        self.current_step = int(step)

    def go_next(self) -> bool:
        if self.completed or self.current_step >= self.step_count:
            return False
        self.current_step += 1
        return True

    def go_previous(self) -> bool:
        if self.completed or self.current_step <= 1:
            return False
        self.current_step -= 1
        return True

    def finish(self) -> None:
        self.completed = True

    @property
    def progress_percentage(self) -> int:
        return round(self.current_step / self.step_count * 100)

    def state(self) -> dict[str, Any]:
        return {
            "current_step": self.current_step,
            "step_count": self.step_count,
            "step": STEPS[self.current_step - 1] if self.step_count == len(STEPS) else None,
            "progress_percentage": self.progress_percentage,
            "completed": self.completed,
        }

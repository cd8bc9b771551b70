"""Step budget control and the forced-final directive."""

from __future__ import annotations

FORCED_FINAL_DIRECTIVE = (
    "You have reached the maximum number of steps for this task. Do not call any "
    "more tools. Reply with plain text only and give a final summary covering: "
    "1) what you accomplished, 2) what work remains, and 3) your recommendations "
    "for the next steps."
)


class StepBudget:
    """Decides when the loop must stop acting and summarise."""

    def __init__(self, max_steps: int | None = None) -> None:
        if max_steps is not None and max_steps < 1:
            raise ValueError("max_steps must be at least 1 when set")
        self.max_steps = max_steps

    @staticmethod
    def should_force_final(step_count: int, max_steps: int | None) -> bool:
        if max_steps is None:
            return False
        return step_count >= max_steps - 1

    def force_final(self, step_count: int) -> bool:
        return self.should_force_final(step_count, self.max_steps)

    def remaining(self, step_count: int) -> int | None:
        if self.max_steps is None:
            return None
        return max(self.max_steps - step_count, 0)


__all__ = ["FORCED_FINAL_DIRECTIVE", "StepBudget"]

"""Safety mode command."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand
from codeloop.core.config import ConfigurationError
from codeloop.core.permissions import SafetyMode

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp

_MODE_HELP = {
    SafetyMode.ASK: "prompt before every mutating tool call",
    SafetyMode.ALWAYS_ALLOW: "run mutating tools without asking",
    SafetyMode.STRICT: "refuse every mutating tool call",
}


def register(app: CLIApp, router: CommandRouter) -> None:
    """Register the /mode command."""

    def handle(app: CLIApp, args: list[str]) -> CommandResponse:
        current = app.gate.mode
        if not args:
            lines = [f"Safety mode: {current.value} ({_MODE_HELP[current]})."]
            approvals = sorted(scope.describe() for scope in app.gate.session_approvals())
            if approvals:
                lines.append("Approved for this session:")
                lines.extend(f"  {item}" for item in approvals)
            lines.append("Usage: /mode ask|always-allow|strict [--save]")
            return CommandResponse(messages=[("system", "\n".join(lines))])

        candidate, *flags = args
        try:
            new_mode = SafetyMode(candidate.lower())
        except ValueError:
            allowed = ", ".join(mode.value for mode in SafetyMode)
            return CommandResponse(
                messages=[("system", f"Unknown safety mode '{candidate}'. Choose from: {allowed}.")]
            )

        app.set_safety_mode(new_mode)
        message = f"Safety mode set to {new_mode.value} ({_MODE_HELP[new_mode]})."
        if "--save" in flags:
            if app.config_manager is None:
                message += " No configuration file to update."
            else:
                try:
                    app.config_manager.update(safety_mode=new_mode.value)
                except ConfigurationError as exc:
                    return CommandResponse(messages=[("system", f"{message} Failed to save: {exc}")])
                message += " Saved as default."
        return CommandResponse(messages=[("system", message)])

    router.register(SlashCommand("mode", handle, "Show or change the safety mode"))


__all__ = ["register"]

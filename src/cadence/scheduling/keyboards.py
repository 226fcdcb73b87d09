"""Keyboard instructions handed to the chat transport.

The engine never renders anything itself. A ``Keyboard`` is rows of
``Button(label, data)``; the transport draws them and sends ``data`` back
when one is pressed. Callback data is ``<prefix>_<action>[:<arg>]`` where
the prefix is ``sched`` for prompt schedules and ``schedpay`` for payments.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cadence.scheduling.recurrence import RepeatPolicy
from cadence.scheduling.types import ActionKind

CALLBACK_PREFIXES: dict[ActionKind, str] = {
    ActionKind.PROMPT: "sched",
    ActionKind.PAYMENT: "schedpay",
}

HOURS_PER_ROW = 6
MINUTES_PER_ROW = 4
REPEATS_PER_ROW = 3


@dataclass(frozen=True)
class Button:
    label: str
    data: str


@dataclass
class Keyboard:
    rows: list[list[Button]] = field(default_factory=list)

    def buttons(self) -> list[Button]:
        return [button for row in self.rows for button in row]


@dataclass(frozen=True)
class Callback:
    """A parsed button press."""

    kind: ActionKind
    action: str
    arg: str | None = None


def callback_data(kind: ActionKind, action: str, arg: object | None = None) -> str:
    data = f"{CALLBACK_PREFIXES[kind]}_{action}"
    return data if arg is None else f"{data}:{arg}"


def parse_callback(data: str) -> Callback | None:
    """Parse callback data produced by this module, or None if it is foreign."""
    prefix, sep, rest = data.partition("_")
    if not sep:
        return None
    kind = next((k for k, p in CALLBACK_PREFIXES.items() if p == prefix), None)
    if kind is None or not rest:
        return None
    action, _, arg = rest.partition(":")
    return Callback(kind=kind, action=action, arg=arg or None)


def _chunk(buttons: list[Button], size: int) -> list[list[Button]]:
    return [buttons[i : i + size] for i in range(0, len(buttons), size)]


def hour_keyboard(kind: ActionKind) -> Keyboard:
    buttons = [Button(f"{h:02d}", callback_data(kind, "hour", h)) for h in range(24)]
    return Keyboard(_chunk(buttons, HOURS_PER_ROW))


def minute_keyboard(kind: ActionKind, step: int) -> Keyboard:
    buttons = [
        Button(f"{m:02d}", callback_data(kind, "min", m)) for m in range(0, 60, step)
    ]
    return Keyboard(_chunk(buttons, MINUTES_PER_ROW))


def repeat_keyboard(kind: ActionKind, policies: tuple[RepeatPolicy, ...]) -> Keyboard:
    buttons = [
        Button(policy.label, callback_data(kind, "repeat", policy.value))
        for policy in policies
    ]
    return Keyboard(_chunk(buttons, REPEATS_PER_ROW))


def confirm_keyboard(kind: ActionKind) -> Keyboard:
    return Keyboard(
        [
            [
                Button("✔️ Create schedule", callback_data(kind, "confirm")),
                Button("↩️ Cancel", callback_data(kind, "cancel")),
            ]
        ]
    )


def failure_keyboard(kind: ActionKind, record_id: str) -> Keyboard:
    """Actions offered alongside a failed-run notification."""
    return Keyboard(
        [
            [
                Button("🔁 Retry now", callback_data(kind, "runnow", record_id)),
                Button("⏸ Pause", callback_data(kind, "toggle", record_id)),
            ]
        ]
    )


def manage_keyboard(kind: ActionKind, record_id: str, active: bool) -> Keyboard:
    """Per-record management actions shown in schedule listings."""
    toggle_label = "⏸ Pause" if active else "▶️ Resume"
    rows = [
        [
            Button(toggle_label, callback_data(kind, "toggle", record_id)),
            Button("🗑 Delete", callback_data(kind, "delete", record_id)),
        ],
        [
            Button("✏️ Edit", callback_data(kind, "edit", record_id)),
            Button("▶️ Run now", callback_data(kind, "runnow", record_id)),
        ],
    ]
    return Keyboard(rows)

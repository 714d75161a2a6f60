"""Questionary / prompt_toolkit theme for rdbinit.

Questionary uses prompt_toolkit under the hood. This module defines the
central style for the interactive confirmations guarding destructive
commands (reconciling duplicates, force-releasing a lock).
"""

from __future__ import annotations

from prompt_toolkit.styles import Style

QUESTIONARY_STYLE_CONFIRM = Style.from_dict(
    {
        "question": "bold ansibrightred",
        "answer": "bold ansibrightred",
        "pointer": "bold ansibrightred",
        "highlighted": "bold ansibrightred",
        "selected": "bold ansibrightred",
        "separator": "ansibrightblack",
        "instruction": "ansibrightblack",
        "error": "bold ansired",
        "disabled": "ansibrightblack",
    }
)

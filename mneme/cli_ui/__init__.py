"""Terminal rendering for attached (headless) runs.

Renders the shared session's live event stream: assistant text as it grows,
tool calls, and session errors.
"""

from mneme.cli_ui.transcript import TranscriptRenderer

__all__ = [
    "TranscriptRenderer",
]

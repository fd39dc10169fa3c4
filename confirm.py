"""
Confirmation policy: decides whether a destructive or corrective action may go ahead.
"""

import enum
import logging
from typing import Callable, Dict

from common import AuditQuit, RunMode


class Response(enum.Enum):
    CONFIRM = "confirm"
    DENY = "deny"
    CONFIRM_ALL = "confirm-all"
    QUIT = "quit"


def parse_response(line: str) -> Response:
    """Map one line of operator input to a response.

    An empty line confirms, as does anything starting with 'y'. 'a' confirms this
    and every later action, 'q' quits, and anything else declines.
    """
    answer = line.strip().lower()
    if not answer or answer.startswith("y"):
        return Response.CONFIRM
    if answer.startswith("a"):
        return Response.CONFIRM_ALL
    if answer.startswith("q"):
        return Response.QUIT
    return Response.DENY


class ConfirmationPolicy:
    """Gate for every write to the database or filesystem.

    REPORT never acts and never prompts, AUTO_CONFIRM always acts, INTERACTIVE asks
    per action. Answering 'all' moves an interactive policy to AUTO_CONFIRM for the
    rest of the run.
    """

    def __init__(self, mode: RunMode, input_func: Callable[[str], str] = input) -> None:
        self.mode = mode
        self._input = input_func

    def confirm(self, description: str, prompt: str = "delete", action: str = "deleting") -> bool:
        if self.mode is RunMode.REPORT:
            return False
        if self.mode is RunMode.AUTO_CONFIRM:
            logging.info(f"{description}: {action}")
            return True

        try:
            line = self._input(f"{description}, {prompt} y/n/a/q: ")
        except EOFError:
            line = "q"
        response = parse_response(line)
        if response is Response.QUIT:
            raise AuditQuit("Quit requested at prompt")
        if response is Response.CONFIRM_ALL:
            logging.info("Confirming all remaining actions")
            self.mode = RunMode.AUTO_CONFIRM
            return True
        return response is Response.CONFIRM


def settle(
    policy: ConfirmationPolicy,
    finding: Dict[str, object],
    stats: Dict[str, int],
    perform: Callable[[], bool],
    prompt: str = "delete",
    action: str = "deleting",
    done: str = "deleted",
) -> bool:
    """Ask the policy about a finding and run perform() if allowed.

    Records the outcome on the finding and in stats. Returns True if the action ran
    and succeeded.
    """
    reporting = policy.mode is RunMode.REPORT
    if not policy.confirm(str(finding["description"]), prompt, action):
        if not reporting:
            finding["action"] = "declined"
            stats["declined"] += 1
        return False
    if not perform():
        finding["action"] = "failed"
        stats["errors"] += 1
        return False
    finding["action"] = done
    stats[done] += 1
    return True

#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Probe-then-act reconciliation of external command line tools.

Each step pairs a side-effect free probe with an idempotent action. The probe
runs first and the action only runs when the probe reports drift, so a chain
of steps can be replayed on every hook without touching a converged host.
"""

import enum
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


class State(enum.Enum):
    """Lifecycle of a single step."""

    PENDING = "pending"
    APPLYING = "applying"
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"


class ErrorKind(enum.Enum):
    """Reason a step ended in the failed state."""

    DEPENDENCY_UNMET = "dependency-unmet"
    PROBE_FAILED = "probe-failed"
    ACTION_FAILED = "action-failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Probe:
    """Read-only check of the current state.

    Exit statuses in `satisfied` mean no action is needed, statuses in
    `unsatisfied` mean the action must run. Anything else is an error.
    """

    argv: Tuple[str, ...]
    satisfied: Tuple[int, ...] = (0,)
    unsatisfied: Tuple[int, ...] = (1,)

    def inverted(self) -> "Probe":
        """Return the absence check for the same command."""
        return Probe(self.argv, satisfied=self.unsatisfied, unsatisfied=self.satisfied)


@dataclass(frozen=True)
class Step:
    """One reconciliation step."""

    name: str
    probe: Probe
    action: Tuple[str, ...]
    depends_on: Optional[str] = None


@dataclass(frozen=True)
class Result:
    """Terminal outcome of a step."""

    step: str
    state: State
    error: Optional[ErrorKind] = None
    output: str = ""

    @property
    def ok(self) -> bool:
        """Whether the step reached the desired state."""
        return self.state in (State.SKIPPED, State.APPLIED)


class ReconcileError(Exception):
    """Exception raised when a chain of steps did not complete."""

    def __init__(self, result: Result):
        super().__init__(f"step {result.step} failed ({result.error.value}): {result.output.strip()}")
        self.result = result

    @property
    def message(self) -> str:
        """Return message passed as argument to exception."""
        return self.args[0]


def _output(e: subprocess.TimeoutExpired) -> str:
    # TimeoutExpired carries bytes even when text mode was requested.
    out = e.output or ""
    if isinstance(out, bytes):
        out = out.decode(errors="replace")
    return out


class Reconciler:
    """Run steps against the host, one reconciliation pass per instance."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.states: Dict[str, State] = {}

    def _execute(self, argv: Sequence[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=self.timeout,
            check=False,
        )

    def _finish(self, step: Step, state: State, error=None, output="") -> Result:
        self.states[step.name] = state
        if state == State.FAILED:
            logger.error(f"{step.name}: {error.value}\n{output}")
        else:
            logger.debug(f"{step.name}: {state.value}")
        return Result(step.name, state, error, output)

    def reconcile(self, step: Step) -> Result:
        """Converge a single step.

        Args:
            step: Step to converge.

        Returns:
            Result: skipped, applied or failed with the captured output.
        """
        if step.depends_on is not None and self.states.get(step.depends_on) not in (
            State.SKIPPED,
            State.APPLIED,
        ):
            return self._finish(
                step,
                State.FAILED,
                ErrorKind.DEPENDENCY_UNMET,
                f"{step.depends_on} has not completed",
            )

        self.states[step.name] = State.PENDING
        try:
            probe = self._execute(step.probe.argv)
        except subprocess.TimeoutExpired as e:
            return self._finish(step, State.FAILED, ErrorKind.TIMEOUT, _output(e))
        except OSError as e:
            return self._finish(step, State.FAILED, ErrorKind.PROBE_FAILED, str(e))

        if probe.returncode in step.probe.satisfied:
            return self._finish(step, State.SKIPPED)
        if probe.returncode not in step.probe.unsatisfied:
            return self._finish(
                step,
                State.FAILED,
                ErrorKind.PROBE_FAILED,
                f"probe exited with status {probe.returncode}\n{probe.stdout}",
            )

        self.states[step.name] = State.APPLYING
        logger.info(f"{step.name}: running {' '.join(step.action)}")
        try:
            action = self._execute(step.action)
        except subprocess.TimeoutExpired as e:
            return self._finish(step, State.FAILED, ErrorKind.TIMEOUT, _output(e))
        except OSError as e:
            return self._finish(step, State.FAILED, ErrorKind.ACTION_FAILED, str(e))

        if action.returncode != 0:
            return self._finish(step, State.FAILED, ErrorKind.ACTION_FAILED, action.stdout)
        return self._finish(step, State.APPLIED, output=action.stdout)

    def reconcile_chain(self, steps: Sequence[Step]) -> List[Result]:
        """Converge steps in order, stopping at the first failure."""
        results = []
        for step in steps:
            result = self.reconcile(step)
            results.append(result)
            if not result.ok:
                break
        return results

    def ensure(self, steps: Sequence[Step]) -> List[Result]:
        """Converge steps in order.

        Raises:
            ReconcileError: Raised with the failing result if a step failed.
        """
        results = self.reconcile_chain(steps)
        if results and not results[-1].ok:
            raise ReconcileError(results[-1])
        return results

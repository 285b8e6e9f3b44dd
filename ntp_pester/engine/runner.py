"""
Test Runner

Executes registered cases one at a time in registration order, turns every
exit path of a case into exactly one Outcome and collects them in a Report.
"""
import asyncio
import time
from typing import Callable, Optional

import structlog

from ntp_pester.engine.registry import Registry, TestCase
from ntp_pester.engine.report import Report
from ntp_pester.engine.target import TargetContext
from ntp_pester.exceptions import PesterError, TestFailure, TestSkipped
from ntp_pester.models import Outcome, ReportEntry

logger = structlog.get_logger()


def describe_response(response) -> Optional[str]:
    """Render a response attached to a failure for the report"""
    if response is None:
        return None
    if isinstance(response, (bytes, bytearray)):
        return f"raw: {bytes(response).hex()}"
    return repr(response)


class TestRunner:
    """
    Runs a registry against one target.

    on_result, when given, is called with every ReportEntry as soon as the
    case finished, so callers can stream output.
    """

    __test__ = False

    def __init__(
        self,
        registry: Registry,
        context: TargetContext,
        case_timeout: Optional[float] = None,
        on_result: Optional[Callable[[ReportEntry], None]] = None,
    ):
        self.registry = registry
        self.context = context
        self.case_timeout = case_timeout or context.config.case_timeout
        self.on_result = on_result

    async def run_case(self, case: TestCase) -> Outcome:
        try:
            await asyncio.wait_for(case.run(self.context), timeout=self.case_timeout)
        except TestSkipped as e:
            return Outcome.skipped(e.reason)
        except TestFailure as e:
            return Outcome.failed(e.reason, describe_response(e.response))
        except asyncio.TimeoutError:
            # Must precede OSError, TimeoutError derives from it on 3.11+
            return Outcome.errored(f"Test case did not finish within {self.case_timeout}s")
        except PesterError as e:
            return Outcome.errored(f"{type(e).__name__}: {e.message}")
        except OSError as e:
            return Outcome.errored(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("case_crashed", case=case.name)
            return Outcome.errored(f"{type(e).__name__}: {e}")
        return Outcome.passed()

    async def run(self) -> Report:
        report = Report()
        for case in self.registry:
            start = time.perf_counter()
            outcome = await self.run_case(case)
            duration_ms = (time.perf_counter() - start) * 1000.0
            entry = report.add(case.name, outcome, duration_ms)
            logger.info(
                "case_finished",
                case=case.name,
                outcome=outcome.kind.value,
                reason=outcome.reason,
                duration_ms=round(duration_ms, 2),
            )
            if self.on_result is not None:
                self.on_result(entry)
        report.finalize()
        return report

"""
Test case registry

A test case is an async function wrapped by udp_test, nts_test or ke_test.
The wrapper decides which connection the body receives and whether the
liveness probe runs afterwards.
"""
import inspect
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, ClassVar, Iterable, Iterator, List

from ntp_pester.engine.connection import nts_server_still_alive, udp_server_still_alive
from ntp_pester.exceptions import ConfigurationError
from ntp_pester.models import Requirement

CaseBody = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class TestCase:
    """A named, immutable test case"""

    __test__ = False

    requirement: ClassVar[Requirement]

    name: str
    body: CaseBody
    summary: str = ""

    async def run(self, context) -> None:
        raise NotImplementedError


class UdpTestCase(TestCase):
    """Body receives a UdpConnection; the server must still answer a poll afterwards"""

    requirement = Requirement.UDP

    async def run(self, context) -> None:
        async with await context.udp() as conn:
            await self.body(conn)
            await udp_server_still_alive(conn)


class NtsTestCase(TestCase):
    """Body receives an NtsConnection; the server must still answer an NTS poll afterwards"""

    requirement = Requirement.NTS

    async def run(self, context) -> None:
        async with await context.nts_connection() as conn:
            await self.body(conn)
            await nts_server_still_alive(conn)


class KeTestCase(TestCase):
    """Body receives a fresh NtsKeConnection"""

    requirement = Requirement.NTS_KE

    async def run(self, context) -> None:
        async with await context.ke() as ke:
            await self.body(ke)


def case_name(func: CaseBody) -> str:
    """basic.test_responds_to_version_4 for ntp_pester.cases.basic.test_responds_to_version_4"""
    module = func.__module__.rsplit(".", 1)[-1]
    return f"{module}.{func.__name__}"


def _summary(func: CaseBody) -> str:
    doc = inspect.getdoc(func)
    return doc.splitlines()[0] if doc else ""


def udp_test(func: CaseBody) -> TestCase:
    return UdpTestCase(case_name(func), func, _summary(func))


def nts_test(func: CaseBody) -> TestCase:
    return NtsTestCase(case_name(func), func, _summary(func))


def ke_test(func: CaseBody) -> TestCase:
    return KeTestCase(case_name(func), func, _summary(func))


class Registry:
    """Ordered, read-only catalog of test cases"""

    def __init__(self, cases: Iterable[TestCase]):
        ordered = {}
        for case in cases:
            if case.name in ordered:
                raise ConfigurationError(f"Duplicate test case {case.name}", details={"name": case.name})
            ordered[case.name] = case
        self._cases = MappingProxyType(ordered)

    def __iter__(self) -> Iterator[TestCase]:
        return iter(self._cases.values())

    def __len__(self) -> int:
        return len(self._cases)

    def __getitem__(self, name: str) -> TestCase:
        return self._cases[name]

    def __contains__(self, name: str) -> bool:
        return name in self._cases

    @property
    def names(self) -> List[str]:
        return list(self._cases)

    def select(self, prefixes: Iterable[str]) -> "Registry":
        """Sub-registry with the cases whose name starts with any of prefixes"""
        prefixes = tuple(prefixes)
        return Registry(case for case in self if case.name.startswith(prefixes))

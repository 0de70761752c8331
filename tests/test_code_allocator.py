import re
from datetime import datetime, timezone

import pytest

from servicedesk.tickets.codes import CodeAllocator, random_suffix
from servicedesk.tickets.errors import CapacityError, DuplicateCodeError


def _fixed_clock() -> datetime:
    return datetime(2024, 10, 3, tzinfo=timezone.utc)


def test_candidates_follow_code_formats():
    allocator = CodeAllocator(clock=_fixed_clock)

    assert re.fullmatch(r"TKT-2410-[A-Z0-9]{6}", allocator.ticket_number_candidate())
    assert re.fullmatch(r"EQ-[A-Z0-9]{8}", allocator.equipment_code_candidate())
    assert re.fullmatch(r"[A-Z0-9]{12}", random_suffix(12))


@pytest.mark.asyncio
async def test_allocation_skips_taken_codes():
    suffixes = iter(["AAAAAA", "BBBBBB"])
    allocator = CodeAllocator(random_source=lambda length: next(suffixes), clock=_fixed_clock)
    taken = {"TKT-2410-AAAAAA"}

    async def is_taken(code: str) -> bool:
        return code in taken

    async def insert(code: str) -> str:
        return code

    assert await allocator.claim_ticket_number(is_taken, insert) == "TKT-2410-BBBBBB"


@pytest.mark.asyncio
async def test_allocation_is_bounded():
    calls = []
    allocator = CodeAllocator(max_attempts=3, random_source=lambda length: "X" * length)

    async def is_taken(code: str) -> bool:
        calls.append(code)
        return True

    async def insert(code: str) -> str:
        raise AssertionError("no candidate was free")

    with pytest.raises(CapacityError):
        await allocator.claim_equipment_code(is_taken, insert)
    assert calls == ["EQ-XXXXXXXX"] * 3


@pytest.mark.asyncio
async def test_precheck_collisions_and_duplicate_inserts_share_one_budget():
    counter = iter(range(1000))
    allocator = CodeAllocator(max_attempts=10, random_source=lambda length: f"{next(counter):0{length}d}")
    candidates = []
    inserts = []

    async def is_taken(code: str) -> bool:
        candidates.append(code)
        # nine of every ten candidates already exist
        return len(candidates) % 10 != 0

    async def insert(code: str) -> str:
        inserts.append(code)
        raise DuplicateCodeError(code)

    with pytest.raises(CapacityError):
        await allocator.claim_ticket_number(is_taken, insert)
    assert len(candidates) == 10
    assert len(inserts) == 1


@pytest.mark.asyncio
async def test_duplicate_insert_moves_on_to_next_candidate():
    suffixes = iter(["AAAAAA", "BBBBBB"])
    allocator = CodeAllocator(max_attempts=2, random_source=lambda length: next(suffixes), clock=_fixed_clock)

    async def is_taken(code: str) -> bool:
        return False

    async def insert(code: str) -> str:
        if code.endswith("AAAAAA"):
            raise DuplicateCodeError(code)
        return code

    assert await allocator.claim_ticket_number(is_taken, insert) == "TKT-2410-BBBBBB"


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        CodeAllocator(max_attempts=0)

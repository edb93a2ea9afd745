"""Sequential pallet number generation.

Format tokens:
  {date}       → YYYYMMDD
  {seq:N}      → zero-padded sequence number, N digits, resets daily

Default format:
  pallet:    PAL-{date}-{seq:3}
"""

import re
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.models.pallet import Pallet

PALLET_FORMAT = "PAL-{date}-{seq:3}"


def _build_prefix(fmt: str, today_str: str) -> str:
    """Everything before {seq:N}, used to count today's codes."""
    prefix = fmt.replace("{date}", today_str)
    return re.sub(r"\{seq:\d+\}.*$", "", prefix)


async def generate_pallet_number(db: AsyncSession, fmt: str = PALLET_FORMAT) -> str:
    """Generate the next pallet number, e.g. "PAL-20260219-001"."""
    today_str = date.today().strftime("%Y%m%d")
    prefix = _build_prefix(fmt, today_str)

    count = await db.scalar(
        select(func.count(Pallet.id)).where(Pallet.pallet_number.like(f"{prefix}%"))
    )
    seq_num = (count or 0) + 1

    seq_match = re.search(r"\{seq:(\d+)\}", fmt)
    seq_width = int(seq_match.group(1)) if seq_match else 3

    code = fmt.replace("{date}", today_str)
    return re.sub(r"\{seq:\d+\}", f"{seq_num:0{seq_width}d}", code)

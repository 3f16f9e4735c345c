"""
Registro: bingo table inventory.

Hands out exactly one undelivered table per user, atomically, and supports release
back to the pool when the table file could not be delivered.
"""

import logging
import random
import re
import time

from django.conf import settings
from django.db import DatabaseError, OperationalError, transaction
from django.db.models import Count, Q
from django.utils import timezone
from requests.exceptions import RequestException

from bingo.conf import TABLE_CODE_PAD
from bingo.exceptions import NoInventoryAvailable, TransactionError, TransportError
from bingo.models import BingoTable, Participant
from bingo.services.transport import create_session

logger = logging.getLogger(__name__)

# Claim attempts when another worker takes the selected row first.
CLAIM_ATTEMPTS = 5

# Whole-transaction retries while SQLite reports the database as locked.
LOCK_ATTEMPTS = 10
LOCK_RETRY_DELAY = 0.05

TABLE_FILE_PATTERN = "BINGO_AMIGO_TABLA_{code}.pdf"
DOWNLOAD_TIMEOUT = 30


def format_table_code(start: int, end: int) -> str:
    return f"{int(start):0{TABLE_CODE_PAD}d}_{int(end):0{TABLE_CODE_PAD}d}"


def assign_table(user_id: int) -> BingoTable:
    """
    Give the lowest-id undelivered table to the user.
    Raises NoInventoryAvailable when the pool is empty, TransactionError when
    either update does not touch exactly one row (the transaction is rolled back)
    or the store stays locked after LOCK_ATTEMPTS tries.
    """
    for attempt in range(1, LOCK_ATTEMPTS + 1):
        try:
            return _claim_table(user_id)
        except OperationalError as e:
            # A retry is only possible when this call owns the transaction.
            if attempt == LOCK_ATTEMPTS or transaction.get_connection().in_atomic_block:
                raise TransactionError("Could not claim a table", debug=f"user_id={user_id}: {e}") from e
            logger.warning("assign_table: user_id=%s store busy (attempt %s): %s", user_id, attempt, e)
            time.sleep(LOCK_RETRY_DELAY * attempt + random.uniform(0, LOCK_RETRY_DELAY))
        except DatabaseError as e:
            raise TransactionError("Could not claim a table", debug=f"user_id={user_id}: {e}") from e
    raise TransactionError("Could not claim a table", debug=f"user_id={user_id} attempts={LOCK_ATTEMPTS}")


def _claim_table(user_id: int) -> BingoTable:
    with transaction.atomic():
        for _ in range(CLAIM_ATTEMPTS):
            table = (
                BingoTable.objects.select_for_update(skip_locked=True)
                .filter(delivered=False)
                .order_by("id")
                .first()
            )
            if table is None:
                raise NoInventoryAvailable()

            claimed = BingoTable.objects.filter(pk=table.pk, delivered=False).update(
                delivered=True, updated_at=timezone.now()
            )
            if claimed != 1:
                logger.info("assign_table: table_id=%s taken concurrently, retrying", table.pk)
                continue

            linked = Participant.objects.filter(pk=user_id, assigned_table__isnull=True).update(
                assigned_table=table, updated_at=timezone.now()
            )
            if linked != 1:
                raise TransactionError(
                    "Could not link table to user",
                    debug=f"user_id={user_id} table_id={table.pk} rows={linked}",
                )

            table.delivered = True
            logger.info("assign_table: user_id=%s table=%s", user_id, table.code)
            return table

    raise TransactionError("Could not claim a table", debug=f"user_id={user_id} attempts={CLAIM_ATTEMPTS}")


def release_table(table_id: int) -> None:
    """Detach the table from its holder and put it back in the pool."""
    try:
        with transaction.atomic():
            table = BingoTable.objects.select_for_update().filter(pk=table_id).first()
            if table is None:
                raise TransactionError("Table not found", debug=f"table_id={table_id}")
            Participant.objects.filter(assigned_table_id=table_id).update(
                assigned_table=None, updated_at=timezone.now()
            )
            BingoTable.objects.filter(pk=table_id).update(delivered=False, updated_at=timezone.now())
    except DatabaseError as e:
        raise TransactionError("Could not release table", debug=f"table_id={table_id}: {e}") from e
    logger.info("release_table: table=%s returned to pool", table.code)


def get_user_table(user_id: int) -> BingoTable | None:
    return BingoTable.objects.filter(holder__pk=user_id).first()


def table_code_exists(code: str, exclude_table_id: int | None = None) -> bool:
    qs = BingoTable.objects.filter(code=code)
    if exclude_table_id:
        qs = qs.exclude(pk=exclude_table_id)
    return qs.exists()


def create_manual_table(
    code: str,
    file_name: str,
    file_url: str,
    confidence: float | None,
    keywords: list[str],
) -> BingoTable:
    """Table proven by an uploaded photo: delivered at creation time."""
    return BingoTable.objects.create(
        code=code,
        file_name=file_name,
        file_url=file_url,
        delivered=True,
        manual_registration=True,
        ocr_validated=True,
        ocr_confidence=confidence,
        ocr_keywords=list(keywords),
    )


def seed_tables(start: int, end: int, block_size: int, base_url: str) -> int:
    """
    Pre-seed undelivered tables covering [start, end] in blocks of block_size cards.
    Existing codes are skipped. Returns the number of tables created.
    """
    if block_size <= 0 or start <= 0 or end < start:
        raise ValueError("Invalid seed range")
    base_url = base_url.rstrip("/")
    candidates = []
    for block_start in range(start, end + 1, block_size):
        block_end = min(block_start + block_size - 1, end)
        code = format_table_code(block_start, block_end)
        file_name = TABLE_FILE_PATTERN.format(code=code)
        candidates.append(BingoTable(code=code, file_name=file_name, file_url=f"{base_url}/{file_name}"))

    existing = set(
        BingoTable.objects.filter(code__in=[t.code for t in candidates]).values_list("code", flat=True)
    )
    new_tables = [t for t in candidates if t.code not in existing]
    BingoTable.objects.bulk_create(new_tables, batch_size=500)
    logger.info("seed_tables: created=%s skipped=%s", len(new_tables), len(existing))
    return len(new_tables)


def table_stats() -> dict:
    """Plain pool counts; delivered + pending always equals total."""
    agg = BingoTable.objects.aggregate(
        total=Count("id"),
        delivered=Count("id", filter=Q(delivered=True)),
        pending=Count("id", filter=Q(delivered=False)),
        manual=Count("id", filter=Q(manual_registration=True)),
        ocr_validated=Count("id", filter=Q(ocr_validated=True)),
    )
    return {key: value or 0 for key, value in agg.items()}


def _fallback_urls(file_url: str) -> list[str]:
    bases = getattr(settings, "BINGO_TABLE_FILE_FALLBACK_BASES", []) or []
    return [re.sub(r"^https?://[^/]+", base.rstrip("/"), file_url) for base in bases]


def fetch_table_artifact(table: BingoTable, session=None) -> bytes:
    """
    Download the table PDF, trying the stored URL first and then each fallback host.
    Raises TransportError when every URL fails.
    """
    if not table.file_url:
        raise TransportError("Table has no file", debug=f"table={table.code}")
    session = session or create_session()
    last_error = None
    for url in [table.file_url] + _fallback_urls(table.file_url):
        try:
            response = session.get(url, timeout=DOWNLOAD_TIMEOUT, headers={"User-Agent": "Mozilla/5.0"})
        except RequestException as e:
            last_error = str(e)
            logger.warning("fetch_table_artifact: url=%s failed: %s", url, e)
            continue
        if response.status_code == 200 and response.content:
            return response.content
        last_error = f"HTTP {response.status_code}"
        logger.warning("fetch_table_artifact: url=%s status=%s", url, response.status_code)
    raise TransportError("Could not download the table file", debug=last_error)

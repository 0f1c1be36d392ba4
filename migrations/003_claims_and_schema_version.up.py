from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


def run(connection: sqlite3.Connection) -> None:
    """Stamps rows left in ``processing`` by older builds so stale-claim release can find them."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    connection.execute(
        "UPDATE sync_queue SET claimed_at = ? WHERE status = 'processing' AND claimed_at IS NULL",
        (now,),
    )

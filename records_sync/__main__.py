from __future__ import annotations

import sys

from records_sync.bootstrap.exception_handler import handle_global_exception
from records_sync.entrypoints.cli import main


try:
    raise SystemExit(main())
except SystemExit:
    raise
except Exception:  # noqa: BLE001
    exc_type, exc_value, exc_traceback = sys.exc_info()
    if exc_type is None or exc_value is None:
        raise SystemExit(3)
    incident_id = handle_global_exception(exc_type, exc_value, exc_traceback)
    sys.stderr.write(f"Unexpected error. Incident id: {incident_id}\n")
    raise SystemExit(3)

import csv
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from backend.config import EXPORTS_DIR

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class ExportSink(Protocol):
    def deliver(self, name: str, header: list[str], rows: list[list[Any]]) -> str: ...


class CsvExportSink:
    """Writes each delivery as `<exports_dir>/<name>.csv` and returns the path."""

    def __init__(self, exports_dir: Path | str | None = None):
        self.exports_dir = Path(exports_dir or EXPORTS_DIR)

    def deliver(self, name: str, header: list[str], rows: list[list[Any]]) -> str:
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        filename = (_UNSAFE.sub("_", name).strip("_") or "export") + ".csv"
        out_path = self.exports_dir / filename
        with open(out_path, "w", newline="", encoding="utf-8") as out_file:
            writer = csv.writer(out_file)
            writer.writerow(header)
            writer.writerows(rows)
        logger.info("Exported %d rows to %s", len(rows), out_path)
        return str(out_path)

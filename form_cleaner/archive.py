import csv
import logging
import os
from datetime import datetime
from typing import Dict, List, Optional, Tuple


def archive_to_csv(rows: List[Tuple], archive_dir: str, table_name: str,
                   stamp: Optional[str] = None) -> Optional[str]:
    if not rows:
        return None
    os.makedirs(archive_dir, exist_ok=True)
    stamp = stamp or datetime.now().strftime("%Y%m%d%H%M%S%f")
    filename = f"{table_name.replace('.', '_')}_{stamp}.csv"
    filepath = os.path.join(archive_dir, filename)
    with open(filepath, mode="w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
    logging.info(f"[ARCHIVE] {table_name}: Archived {len(rows)} rows to {filepath}")
    return filepath


def flush_archive(buffers: Dict[str, List[Tuple]], archive_dir: str, batch_no: int) -> List[str]:
    """Write each table's committed rows to its own CSV file and empty the buffers."""
    stamp = f"{datetime.now().strftime('%Y%m%d%H%M%S')}_batch{batch_no:05d}"
    written = []
    for tbl_name, rows in buffers.items():
        path = archive_to_csv(rows, archive_dir, tbl_name, stamp=stamp)
        if path:
            written.append(path)
    buffers.clear()
    return written

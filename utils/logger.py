from loguru import logger
import sys
from pathlib import Path


def enrich_record(record):
    file_path = Path(record["file"].path)
    try:
        relative_path = file_path.relative_to(Path.cwd())
    except ValueError:
        relative_path = file_path
    record["extra"]["rel_path"] = str(relative_path)

    # region / host context bound with logger.contextualize
    prefix_keys = [k for k in ("region", "host") if k in record["extra"]]
    if prefix_keys:
        prefix_parts = [f"[{record['extra'][k]}]" for k in prefix_keys]
        record["extra"]["formatted_prefix"] = " ".join(prefix_parts) + " "
    else:
        record["extra"]["formatted_prefix"] = ""

    return True


def configure_logger(level: str = "INFO"):
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSSSSS}</green> | <level>{level: <8}</level> | <cyan>{extra[rel_path]}</cyan>:<cyan>{line}</cyan> - <level>{extra[formatted_prefix]}{message}</level>",
        colorize=True,
        filter=enrich_record
    )

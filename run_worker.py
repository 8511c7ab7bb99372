#!/usr/bin/env python3
"""
Queue a local document for knowledge base ingestion from the project root.

Usage: run_worker.py <tenant_id> <knowledge_base_id> <path> [<path> ...]
The Celery worker itself is started with
``celery -A coach_chatbot.workers.ingest worker -Q celery,embedding``.
"""

import sys
import logging
from pathlib import Path

from coach_chatbot.workers.ingest import process_document

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main(argv):
    if len(argv) < 3:
        print(__doc__)
        return 1
    tenant_id, knowledge_base_id, *paths = argv
    for path in map(Path, paths):
        process_document.delay(
            tenant_id,
            knowledge_base_id,
            path.name,
            path.read_text(encoding="utf-8"),
            {"source": str(path)},
        )
        logger.info(f"Queued {path} for knowledge base {knowledge_base_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))

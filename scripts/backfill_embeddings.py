#!/usr/bin/env python3
"""Embed stored messages that have no embedding and make them searchable.

This script:
1. Records the configured embedding model/dimension in the store, clearing
   old embeddings if the embedding space changed
2. Embeds every message whose embedding is missing (optionally for one user)
3. Optionally rebuilds the similarity index from the store

Usage:
    python scripts/backfill_embeddings.py [--db-path data/solo_tutor.db] [--user USER_ID]

Environment variables:
    AI_EMBEDDING_BACKEND, AI_EMBED_MODEL, EMBEDDING_DIM: embedding configuration
    VECTOR_DB: "memory" (default) or "chroma"
    CHROMA_PERSIST_DIR: Optional, defaults to ./chroma_db
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from solo_tutor import Settings, SoloTutor
from solo_tutor.maintenance import backfill_embeddings, reindex


def run_backfill(db_path=None, user_id=None, limit=None, rebuild_index=False):
    settings = Settings.from_env()
    if db_path is not None:
        settings = settings.with_overrides(db_path=db_path)

    if not os.path.exists(settings.db_path):
        print(f"ERROR: Database file not found: {settings.db_path}")
        print("Please specify the correct path with --db-path")
        sys.exit(1)

    print(f"Backfilling embeddings in: {settings.db_path}")
    print(f"Embedding backend: {settings.embedding_backend} "
          f"({settings.embedding_model}, dim={settings.embedding_dim})")
    if user_id:
        print(f"Restricted to user: {user_id}")

    tutor = SoloTutor.from_settings(settings)
    result = backfill_embeddings(tutor.store, tutor.embedder, tutor.index,
                                 user_id=user_id, limit=limit)

    print(f"\n✓ Embedded {result['embedded']} of {result['pending']} messages "
          f"(skipped {result['skipped']})")

    if rebuild_index:
        count = reindex(tutor.store, tutor.index)
        print(f"✓ Rebuilt index with {count} messages")


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    parser = argparse.ArgumentParser(
        description="Generate embeddings for stored messages that have none"
    )
    parser.add_argument("--db-path", type=str, default=None,
                        help="Path to SQLite database (default: TUTOR_DB_PATH or data/solo_tutor.db)")
    parser.add_argument("--user", type=str, default=None,
                        help="Only backfill messages owned by this user id")
    parser.add_argument("--limit", type=int, default=None,
                        help="Maximum number of messages to embed")
    parser.add_argument("--reindex", action="store_true",
                        help="Rebuild the similarity index from the store afterwards")

    args = parser.parse_args()
    run_backfill(db_path=args.db_path, user_id=args.user, limit=args.limit,
                 rebuild_index=args.reindex)

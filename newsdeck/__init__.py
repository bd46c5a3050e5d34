# Newsdeck: event ingestion, channel fan-out and live delivery
#
# Components:
#   normalizer.py - Envelope shape detection, target identifiers
#   builder.py    - Item schema, validation, CanonicalItem construction
#   resolver.py   - Producer binding → channel resolution
#   directory.py  - Channel-group directory (SQLite)
#   store.py      - SQLite persistence, batched replace-by-external-id writes
#   broadcast.py  - Cross-process broadcast transports
#   delivery.py   - In-process delivery queue
#   notifier.py   - Post-commit fan-out
#   ingestion.py  - Pipeline tying the above together
#   stream.py     - SSE stream and long-poll subscribers
#   config.py     - YAML/env configuration

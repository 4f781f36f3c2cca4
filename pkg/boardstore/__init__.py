# Board storage system: boards, ordered cards, backups, and recovery
#
# Components:
#   schema.py      - Data model (Card, Board, BoardSet)
#   errors.py      - Error taxonomy
#   validation.py  - Invariant checks and best-effort repair
#   storage.py     - Async key-value backends (memory, SQLite)
#   service.py     - Board/card CRUD and reordering with per-context cache
#   payloads.py    - Versioned backup/export envelopes
#   backup.py      - Backup, restore, export and import
#   migration.py   - Legacy data migration and context initialization
#   recovery.py    - Tiered recovery (primary -> backups -> defaults)
#   resilience.py  - Retry, fallback, circuit breaker, debounce, throttle
#   feedback.py    - Notification and progress surface bridge
#   config.py      - YAML settings
#   cli.py         - Command line entry point (python -m pkg.boardstore)

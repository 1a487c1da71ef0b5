"""Memory pipeline — event ledger, embedding outbox, progressive retrieval, graduation.

Layout:
    ~/.memlayer/
    ├── memlayer.toml                  # Optional configuration
    ├── ledger.db                      # SQLite (WAL): events, levels, citations,
    │                                  #   citation_usages, outbox, sessions, FTS index
    ├── index/                         # ChromaDB persistent collection "events"
    └── memlayer.pid                   # Present while the daemon runs

Writes go ledger -> outbox -> index; reads go retriever -> {ledger, index}.
The ledger is the source of truth: the index and citations can be rebuilt from it.
"""

"""
sqlite-open-helper — persistence layer.

File: src/sqlite_open_helper/persistence/__init__.py

Purpose
- Path resolution, the SQLite handle wrapper, migration hooks and the
  connection lifecycle manager.

Import submodules directly; this package imports nothing at load time.
"""

"""
MBTiles tile server test suite.

Structure:
- unit/: reader, registry, services, config, logging and lifecycle in isolation
- integration/: the FastAPI app end to end; test_live_server.py needs a running server
- conftest.py: builds throwaway MBTiles archives with sqlite3
"""

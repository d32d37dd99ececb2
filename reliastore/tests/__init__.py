"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Core helpers (paths, settings, retry)
    - Storage (in-memory and redis backends, blob codec)
    - Schema validation and migrations
    - Leases, session table and lifecycle state machine
    - Persistence engine, scheduler and the public facade
"""

"""
Per-domain repository modules for database access.

Repositories are synchronous and take an open ``Session``; async routes call
them through ``run_in_threadpool``.
"""

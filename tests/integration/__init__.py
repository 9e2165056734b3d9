"""
buildwave integration tests.

Purpose
- End-to-end runs across planes and CLI subprocess contracts.
- Must not require network access; git-backed cases skip when git is missing.
"""

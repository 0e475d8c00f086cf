"""Clients for the remote systems the tools and the workflow talk to.

Each integration exposes a Protocol (what the workflow codes against), an
httpx-backed client, and a Mock client returning canned data for tests and
local development.
"""

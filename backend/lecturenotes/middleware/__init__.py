"""
Lecture Notes Backend — Middleware Package
============================================

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Request ID: correlation id for every log line of the request
    2. Logging: one access line per request, with status and duration

Background pipeline tasks run outside any request; their log lines carry
the job id instead.
"""

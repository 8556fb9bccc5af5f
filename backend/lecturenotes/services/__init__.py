"""
Lecture Notes Backend — Services Layer
========================================

Service Inventory:
    Quota accounting
    - plans.py:                Tier catalog (limits, grace, output formats)
    - tier_resolver.py:        Effective tier under pending downgrades
    - periods.py / grace.py:   Usage period keys, grace allowance
    - quota_ledger.py:         Admission decision (read-only)
    - usage_tracker.py:        Serialized usage commit at job completion
    - subscription_service.py: Applies billing webhook events

    Job processing
    - job_service.py:          Submit / status / usage / cancel
    - job_runner.py:           Background asyncio tasks per job
    - pipeline.py:             Stage state machine, retries, resume

    Collaborators
    - collaborators.py:        Abstract contracts + StructuredNotes
    - gemini_service.py:       Transcription, extraction, synthesis
    - rendering_service.py:    txt/md locally, pdf through Gotenberg
    - file_service.py:         Storage refs and artifacts
"""

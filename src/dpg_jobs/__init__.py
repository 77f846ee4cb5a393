"""
DPG Jobs - background job service for the digitization pipeline

This package provides a FastAPI-based web service that runs the long,
failure-prone work of the library's digital production group as tracked
jobs:

- Unit finalization (QA, master file import, IIIF, archive, deliverables)
- OCR requests and their completion callbacks
- Publication of metadata records to Virgo
- Order delivery readiness checks
- Copies of archived master files back to production
- Rebuilt patron deliverables for a unit
- Master file delete, renumber and deaccession

Every job is created before its work starts, so the caller gets a job ID
immediately and polls ``/jobs/{id}`` and ``/jobs/{id}/events`` for progress.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - services: Collaborator wiring and the short endpoint jobs
    - job_manager: Job status lifecycle and crash-isolated execution
    - finalization: The unit finalization workflow
    - master_files: Master file maintenance jobs
    - database: SQLite persistence
    - configuration: Config loading and environment overrides

Usage:
    Run the API server with:
        uvicorn dpg_jobs.main:app --host 0.0.0.0 --port 8080
"""

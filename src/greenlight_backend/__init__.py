"""
Greenlight Backend - REST API for manuscript intake and analysis

This package provides a FastAPI-based web service that accepts a PDF
manuscript together with a short synopsis and produces a market-oriented
analysis of it. It enables:

- PDF upload, validation and text extraction
- Background language-model analysis (genre, tropes, themes, comparable titles)
- Submission status tracking for polling clients
- Email signups tied to a submission
- Cached publication metadata lookups for comparable titles

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - submission_manager: Submission lifecycle coordinator and worker pool
    - database: SQLite document store with compare-and-swap status updates
    - analysis: Completion-service client, error taxonomy and metadata cache
    - pdf: PDF validation and text extraction
    - models: Pydantic models for records, analysis results and API payloads
    - configuration: Settings loading and merging logic
    - utils: Filesystem and string utilities

Usage:
    Run the API server with:
        uvicorn greenlight_backend.main:app --reload --host 0.0.0.0 --port 8000

    Or use the development script:
        uv run uvicorn greenlight_backend.main:app --reload

Submission lifecycle:
    uploaded -> processing -> completed | error

    Status only ever moves forward. A completed submission is never analyzed
    again, and only one worker can move a submission into processing.
"""
from __future__ import annotations

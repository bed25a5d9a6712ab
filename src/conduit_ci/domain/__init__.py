"""
Domain types shared across the orchestrator: pipeline definitions, runs, stage
records, artifacts, findings and the error taxonomy.

The domain layer is free of IO side effects.
"""

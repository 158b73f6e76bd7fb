"""Shared infrastructure for all pipeline packages.

Provides the cursor-driven
[SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline], the
shared configuration models and every SQL query the pipelines run.
"""

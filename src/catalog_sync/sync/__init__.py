"""Catalog sync pipeline.

Leaf-first: ``retry`` (backoff executor) -> ``pool`` (bounded worker pool)
-> ``pricing`` (cost accountant) -> ``pipeline`` (run orchestrator).
Only the pipeline talks to the outside world, and only through the
protocols in ``adapters.base``, ``ai.base``, ``persistence`` and
``broadcast``. ``service`` runs pipelines on background threads and keeps
their status pollable.
"""

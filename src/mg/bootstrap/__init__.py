"""Crash-resumable bootstrap ingestion."""

from mg.bootstrap.pipeline import BootstrapResult, run_bootstrap

__all__ = ["BootstrapResult", "run_bootstrap"]

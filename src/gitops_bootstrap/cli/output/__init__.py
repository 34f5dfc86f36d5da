"""CLI output rendering for installation runs."""

from gitops_bootstrap.cli.output.outcome import exit_code_for, render_outcome

__all__ = ["exit_code_for", "render_outcome"]

"""Solver backends for stuffed problems."""

from dcpjax.solvers import base, clarabel_bridge, osqp_bridge, router

__all__ = ["base", "clarabel_bridge", "osqp_bridge", "router"]

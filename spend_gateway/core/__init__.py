"""
Core modules for Spend Gateway.

This package contains pricing, budget guardrails, the circuit breaker
and the gateway orchestrator.
"""

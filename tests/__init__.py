"""
Sluice Test Suite
=================

Test organization mirrors the source code structure:
    tests/
    ├── test_core/           → Tests for sluice.core (config, models)
    ├── test_infrastructure/ → Tests for sluice.infrastructure (job store)
    ├── test_resilience/     → Tests for sluice.resilience (breakers, retries)
    ├── test_scheduling/     → Tests for sluice.scheduling (priority, lifecycle, status)
    ├── test_integrations/   → Tests for sluice.integrations (executor, worker, fallback)
    ├── test_integration/    → End-to-end scenarios through the facade
    └── conftest.py          → Shared pytest fixtures

Running Tests:
    pytest                           # Run all tests
    pytest tests/test_scheduling/    # Run only scheduling tests
    pytest --cov=sluice              # Run with coverage report
"""

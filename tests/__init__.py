"""
Facility Harvester - Test Suite

Structure:
    unit/: Unit tests for individual components
    integration/: Crash, resume and CLI scenarios across components

Running Tests:
    # Run all tests
    pytest

    # Run specific test file
    pytest tests/unit/test_checkpoint.py

    # Run with verbose output
    pytest -v
"""

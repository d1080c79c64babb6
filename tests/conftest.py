"""
Pytest configuration and shared fixtures for the benchmark tests.
"""

# Import all fixtures from the centralized fixtures file
from tests.fixtures import *  # noqa: F403

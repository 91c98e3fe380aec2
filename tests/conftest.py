"""
Shared fixtures for the subswarm test suite.

The scripted generator and unit builders live in ``tests.helpers`` so test
modules can import them directly.
"""

from __future__ import annotations

import pytest

from subswarm.state import StateSnapshot


@pytest.fixture()
def parent_state() -> StateSnapshot:
    """A parent with five todos (ids p0..p4) and one file."""
    state = StateSnapshot()
    for index in range(5):
        state.add_todo(f"parent task {index}", id=f"p{index}")
    state.files.write("/README.md", "parent readme")
    return state

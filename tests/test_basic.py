"""
Basic tests for the stack-cascade package.
"""

import re

from stack_cascade import __version__


def test_version_matches_semver():
    assert re.match(r"^\d+\.\d+\.\d+$", __version__)


def test_package_structure():
    """Test package structure and __all__ exports."""
    import stack_cascade

    for export in stack_cascade.__all__:
        assert hasattr(stack_cascade, export), f"Missing export: {export}"

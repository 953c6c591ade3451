"""Test project label sanitization and safe path joins."""

import os
import re

import pytest

from reconcile_engine.core.errors import InvalidPath
from reconcile_engine.core.sanitize import join_under, sanitize_project_label

LABEL = re.compile(r"^[a-z0-9_-]+$")

NAMES = [
    "myproj",
    "My Project",
    "  Spaces  Around ",
    "UPPER-case_mixed",
    "weird!!chars##here",
    "---",
    "",
    "   ",
    "__init__",
    "ünïcödé stack",
    "a/b\\c",
    "web.app.v2",
]


class TestSanitizeProjectLabel:
    """Test compose project label derivation."""

    @pytest.mark.parametrize("name", NAMES)
    def test_idempotent(self, name):
        """Test sanitize(sanitize(s)) == sanitize(s)."""
        once = sanitize_project_label(name)
        assert sanitize_project_label(once) == once

    @pytest.mark.parametrize("name", NAMES)
    def test_output_charset(self, name):
        """Test output matches the label charset or is 'default'."""
        label = sanitize_project_label(name)
        assert LABEL.match(label) or label == "default"

    def test_examples(self):
        """Test representative conversions."""
        assert sanitize_project_label("My Project") == "my_project"
        assert sanitize_project_label("web.app.v2") == "web_app_v2"
        assert sanitize_project_label("---") == "default"
        assert sanitize_project_label("") == "default"
        assert sanitize_project_label("myproj") == "myproj"


class TestJoinUnder:
    """Test path confinement."""

    def test_relative_path_joined(self, tmp_path):
        """Test plain relative paths resolve under root."""
        full = join_under(str(tmp_path), "sub/file.env")
        assert full == os.path.join(str(tmp_path), "sub", "file.env")

    @pytest.mark.parametrize("rel", ["../escape", "a/../../escape", "/etc/passwd", ""])
    def test_rejects_escapes(self, tmp_path, rel):
        """Test absolute paths and '..' escapes raise InvalidPath."""
        with pytest.raises(InvalidPath):
            join_under(str(tmp_path), rel)

    def test_inner_dotdot_allowed(self, tmp_path):
        """Test '..' that stays inside root is accepted."""
        full = join_under(str(tmp_path), "a/../b.txt")
        assert full == os.path.join(str(tmp_path), "b.txt")

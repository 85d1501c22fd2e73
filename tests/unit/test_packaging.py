"""Unit tests for the setup script."""

import runpy
from pathlib import Path
from unittest.mock import patch

import convstream

SETUP_PY = Path(__file__).resolve().parents[2] / "setup.py"


class TestSetupScript:
    """Tests for reading package metadata at build time."""

    def test_metadata_read_from_package(self):
        """Test version and author come from the package's dunder lines."""
        with patch("setuptools.setup") as setup:
            runpy.run_path(str(SETUP_PY), run_name="__main__")

        kwargs = setup.call_args.kwargs
        assert kwargs["name"] == "convstream"
        assert kwargs["version"] == convstream.__version__
        assert kwargs["author"] == convstream.__author__

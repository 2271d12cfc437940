"""Checks on the Alembic configuration shipped with the project."""

from pathlib import Path

import pytest
from alembic.config import Config

ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


@pytest.mark.unit
def test_alembic_ini_declares_path_separator():
    config = Config(str(ALEMBIC_INI))
    assert config.get_main_option("script_location") == "alembic"
    assert config.get_main_option("prepend_sys_path") == "."
    assert config.get_main_option("path_separator") == "os"

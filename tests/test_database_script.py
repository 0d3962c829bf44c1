"""Tests for the database setup script."""

from pathlib import Path

import pytest

from provisioner.database_script import (
    SAMPLE_CUSTOMERS,
    SPECIAL_VEHICLES,
    DatabaseScriptError,
    render_database_script,
    write_database_script,
)
from provisioner.errors import ProvisioningError


class TestRenderDatabaseScript:
    def test_principal_is_filled_in(self) -> None:
        script = render_database_script("loanagent-logicapp-ab12cd")

        assert "CREATE USER [loanagent-logicapp-ab12cd] FROM EXTERNAL PROVIDER;" in script
        assert "ALTER ROLE db_datareader ADD MEMBER [loanagent-logicapp-ab12cd];" in script
        assert "$" not in script

    def test_every_statement_is_guarded(self) -> None:
        script = render_database_script("loanagent-logicapp-ab12cd")

        assert script.count("IF NOT EXISTS") == 5
        assert "IF IS_ROLEMEMBER" in script

    def test_sample_rows_are_seeded(self) -> None:
        script = render_database_script("app")

        assert script.count("(N'555-") == len(SAMPLE_CUSTOMERS)
        assert "N'Huracán'" in script
        assert "330000.00" in script
        assert len(SPECIAL_VEHICLES) == 9

    @pytest.mark.parametrize(
        "name",
        ["", "-leading-dash", "name'; DROP TABLE x; --", "has space", "a" * 61],
    )
    def test_unsafe_names_are_rejected(self, name: str) -> None:
        with pytest.raises(ProvisioningError):
            render_database_script(name)


class TestWriteDatabaseScript:
    def test_writes_file(self, tmp_path: Path) -> None:
        path = tmp_path / "setup.sql"

        result = write_database_script(path, "loanagent-logicapp-ab12cd")

        assert result == path
        assert path.read_text(encoding="utf-8").startswith("-- AI Loan Agent database setup")

    def test_rewrite_is_identical(self, tmp_path: Path) -> None:
        path = tmp_path / "setup.sql"
        write_database_script(path, "app")
        first = path.read_bytes()

        write_database_script(path, "app")

        assert path.read_bytes() == first

    def test_invalid_name_writes_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "setup.sql"

        with pytest.raises(ProvisioningError):
            write_database_script(path, "bad]name")

        assert not path.exists()

    def test_unwritable_location_is_a_script_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(DatabaseScriptError) as exc_info:
            write_database_script(blocker / "setup.sql", "app")

        assert "sql-script" in exc_info.value.remediation

"""Tests for the interactive setup wizard."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from codetrack.scripts import setup

from fakes import make_project


def _settings(key="secret"):
    return SimpleNamespace(encryption_key=key, gitlab_api_base="https://gitlab.test/api/v4")


class TestRunSetup:
    def test_requires_encryption_key(self):
        with patch("codetrack.config.get_settings", return_value=_settings(key="")):
            with pytest.raises(SystemExit) as info:
                setup.run_setup()
        assert info.value.code == 1

    def test_connects_token(self, engine, capsys):
        integration = SimpleNamespace(gitlab_username="alice")
        connect = AsyncMock(return_value=(integration, 3))

        with patch("codetrack.config.get_settings", return_value=_settings()), \
             patch("codetrack.db.engine.get_engine", return_value=engine), \
             patch("builtins.input", side_effect=["user-1", "alice", "api, web"]), \
             patch("codetrack.scripts.setup.getpass.getpass", return_value="glpat-secret"), \
             patch("codetrack.scripts.setup._connect", connect):
            setup.run_setup()

        connect.assert_awaited_once_with("user-1", "alice", "glpat-secret", "api, web")
        assert "Connected as alice (3 repositories found)" in capsys.readouterr().out

    def test_keeps_existing_integration(self, engine, make_integration):
        make_integration("user-1")
        connect = AsyncMock()

        with patch("codetrack.config.get_settings", return_value=_settings()), \
             patch("codetrack.db.engine.get_engine", return_value=engine), \
             patch("builtins.input", side_effect=["user-1", "n"]), \
             patch("codetrack.scripts.setup._connect", connect):
            with pytest.raises(SystemExit) as info:
                setup.run_setup()

        assert info.value.code == 0
        connect.assert_not_awaited()

    def test_connection_failure_exits(self, engine):
        connect = AsyncMock(side_effect=ValueError("GitLab username does not match the token owner"))

        with patch("codetrack.config.get_settings", return_value=_settings()), \
             patch("codetrack.db.engine.get_engine", return_value=engine), \
             patch("builtins.input", side_effect=["user-1", "alice", ""]), \
             patch("codetrack.scripts.setup.getpass.getpass", return_value="glpat"), \
             patch("codetrack.scripts.setup._connect", connect):
            with pytest.raises(SystemExit) as info:
                setup.run_setup()

        assert info.value.code == 1


class TestConnect:
    @pytest.mark.asyncio
    async def test_uses_connection_service(self, engine, fake_gitlab, vault):
        fake_gitlab.projects = [make_project(1, "api"), make_project(2, "web")]
        client = MagicMock()
        client.__aenter__ = AsyncMock(return_value=fake_gitlab)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("codetrack.db.engine.get_engine", return_value=engine), \
             patch("codetrack.gitlab.client.GitLabClient", return_value=client), \
             patch("codetrack.gitlab.vault.get_vault", return_value=vault):
            integration, repo_count = await setup._connect("user-1", "alice", "glpat-secret", "")

        assert integration.gitlab_username == "alice"
        assert repo_count == 2

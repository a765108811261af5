"""
Tests for the command line.
"""

import pytest
from unittest.mock import AsyncMock, patch

from tenantlens import __main__ as cli


class TestParser:
    """Test argument parsing."""

    def test_findings_category(self):
        args = cli.build_parser().parse_args(["findings", "--category", "identity"])
        assert args.command == "findings"
        assert args.category == "identity"

    def test_invalidate_options(self):
        args = cli.build_parser().parse_args(["cache-invalidate", "--type", "users"])
        assert args.type == "users"
        assert args.key is None

    def test_serve_defaults(self):
        args = cli.build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8000

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    """Test dispatch."""

    def test_runs_command(self):
        with patch.object(cli, "run_command", AsyncMock(return_value=0)) as run_command, \
                patch.object(cli, "configure_logging"):
            assert cli.main(["summary"]) == 0

        assert run_command.await_args.args[0].command == "summary"

    def test_serve_starts_uvicorn(self):
        with patch("uvicorn.run") as run, patch.object(cli, "configure_logging"):
            assert cli.main(["serve", "--port", "9000"]) == 0

        run.assert_called_once_with("api:app", host="127.0.0.1", port=9000)

    @pytest.mark.asyncio
    async def test_cache_invalidate_command(self, capsys):
        runtime = AsyncMock()
        runtime.cache.invalidate = AsyncMock(return_value=4)
        args = cli.build_parser().parse_args(["cache-invalidate", "--type", "users"])

        assert await cli.cmd_cache_invalidate(runtime, args) == 0

        runtime.cache.invalidate.assert_awaited_once_with(key=None, cache_type="users")
        assert "Invalidated 4" in capsys.readouterr().out

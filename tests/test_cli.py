"""Tests for the cdpwire command line."""

import pytest
from click.testing import CliRunner

from cdpwire import __version__
from cdpwire.browser.frame_tree import Frame, FrameTree
from cdpwire.cli import _render_frame_tree, cli


class TestCli:
    """Argument handling that does not need a browser."""

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "targets" in result.output
        assert "frames" in result.output

    def test_targets_without_url_is_usage_error(self, monkeypatch):
        monkeypatch.delenv("CDPWIRE_CDP_URL", raising=False)
        result = CliRunner().invoke(cli, ["targets"])
        assert result.exit_code == 2
        assert "CDPWIRE_CDP_URL" in result.output

    def test_frames_requires_target_id(self):
        result = CliRunner().invoke(cli, ["frames"])
        assert result.exit_code == 2

    def test_unreachable_endpoint_exits_with_error(self):
        result = CliRunner().invoke(cli, ["targets", "--cdp-url", "ws://127.0.0.1:1/devtools/browser/x"])
        assert result.exit_code == 1
        assert "Error" in result.output


class TestRenderFrameTree:
    @pytest.mark.asyncio
    async def test_nested_frames(self):
        tree = FrameTree()
        tree.add_frame(Frame(frame_id="F0", url="https://example.com/"))
        tree.add_frame(Frame(frame_id="F1", parent_id="F0", url="https://ads.test/"))
        rendered = _render_frame_tree(tree)
        assert "F0" in str(rendered.label)
        assert "F1" in str(rendered.children[0].label)

    @pytest.mark.asyncio
    async def test_empty_tree(self):
        assert "no frames" in str(_render_frame_tree(FrameTree()).label)

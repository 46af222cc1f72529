"""
Tests for uiembed.host — attach flow, startup replay, lifecycle ordering.

UIs run in-process: each test UI is a Session on one end of a socket pair
whose other end is registered with the host's channel manager.
"""

import asyncio
import os
from unittest.mock import patch

import pytest

from screen_mirror import connect_ui, read_messages, stream_pair
from uiembed.config import EmbedConfig
from uiembed.core.events import LifecycleEvent
from uiembed.core.startup import BufferState, StartupReplay
from uiembed.errors import AttachError, ChannelClosed, InvalidArgs, MethodNotFound
from uiembed.host import HOST_METHODS, EditorHost
from uiembed.rpc.protocol import Notification, Request, Response, encode_message
from uiembed.rpc.session import Session
from uiembed.rpc.stream import new_address, open_connect
from uiembed.ui.attach import UiState
from uiembed.ui.pager import PAGER_PROMPT

HEADER = "Error detected while processing pre-vimrc command line:"


def _host(wait_for_ui=True, **config):
    return EditorHost(EmbedConfig(**config), wait_for_ui=wait_for_ui)


def _blank_screen(height):
    return [""] + ["~"] * (height - 2) + [""]


# ── Scenario A: startup diagnostics, pager, continue ────────────


class TestPagerAttach:
    @pytest.mark.asyncio
    async def test_pager_then_blank_buffer(self):
        host = _host()
        await host.run(pre_commands=['echoerr "foo"'])
        cid, ui = await connect_ui(host)
        try:
            assert await ui.attach(60, 8, ext_linegrid=True) is None
            await ui.wait_for_text(PAGER_PROMPT)

            assert ui.mirror.lines()[-3:] == [HEADER, "foo", PAGER_PROMPT]
            assert ui.mirror.hl_at(6, 0) == "ErrorMsg"
            assert ui.mirror.hl_at(7, 0) == "MoreMsg"
            assert host.ui(cid).state is UiState.ATTACHING
            assert host.lifecycle_log() == []

            assert await ui.input("<CR>") == 4
            await ui.wait_for(lambda m: m.lines() == _blank_screen(8))
            assert host.ui(cid).state is UiState.ATTACHED
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{cid}"]
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_other_keys_keep_pager(self):
        host = _host()
        await host.run(commands=["bogus"])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(60, 6, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            assert ui.mirror.lines()[-3:] == [
                "Error detected while processing command line:",
                "E492: Not an editor command: bogus",
                PAGER_PROMPT,
            ]
            assert await ui.input("xy") == 2
            await asyncio.sleep(0.05)
            assert host.ui(cid).in_pager

            await ui.input("<Space>")
            await ui.wait_for(lambda m: m.lines() == _blank_screen(6))
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_keys_after_continue_become_typeahead(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 5, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            await ui.input("a<CR>:q<CR>")
            await ui.wait_for(lambda m: m.lines() == _blank_screen(5))
            assert host.editor.typeahead == [":q<CR>"]
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_input_racing_the_dismissal_is_kept(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 5, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            assert await asyncio.gather(ui.input("<CR>"), ui.input("ihello")) == [4, 6]
            await ui.wait_for(lambda m: m.lines() == _blank_screen(5))
            assert host.editor.typeahead == ["ihello"]
            assert host.ui(cid).state is UiState.ATTACHED
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_diagnostic_after_dismissal_goes_to_message_row(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 5, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            ui_state = host.ui(cid)
            # continue arrives, then output lands before the attach completes
            ui_state.pager = None
            ui_state.continued.set()
            assert ui_state.pager_dismissed
            host.report_error("E1: late")
            assert ui_state.pager is None
            await ui.wait_for(lambda m: m.lines()[-1] == "E1: late")
            assert ui_state.state is UiState.ATTACHED
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_diagnostic_while_paging_is_appended(self):
        host = _host()
        await host.run(pre_commands=['echoerr "first"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 8, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            host.report_error("second")
            await ui.wait_for(lambda m: m.lines()[-3:] == ["first", "second", PAGER_PROMPT])
        finally:
            await ui.close()
            await host.close()


# ── Scenario B: stdin_fd content, no pager ──────────────────────


class TestStdinFd:
    @pytest.mark.asyncio
    async def test_pipe_content_rendered_directly(self):
        host = _host()
        await host.run()
        r, w = os.pipe()
        os.write(w, b"line one\nline two\n")
        os.close(w)
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 8, ext_linegrid=True, stdin_fd=r)
            await ui.wait_for_text("line two")
            assert ui.mirror.lines() == ["line one", "line two"] + ["~"] * 5 + [""]
            assert all(PAGER_PROMPT not in str(batch) for batch in ui.batches)
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{cid}"]
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_regular_file_content(self, tmp_path):
        path = tmp_path / "input.txt"
        path.write_text("alpha\nbeta\n")
        fd = os.open(path, os.O_RDONLY)
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(20, 4, ext_linegrid=True, stdin_fd=fd)
            await ui.wait_for_text("beta")
            assert ui.mirror.lines()[:2] == ["alpha", "beta"]
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_closed_stdin_fd_rejected(self):
        host = _host()
        cid, ui = await connect_ui(host)
        r, w = os.pipe()
        os.close(r)
        os.close(w)
        try:
            with pytest.raises(AttachError):
                await ui.attach(20, 4, stdin_fd=r)
            assert host.ui(cid) is None
        finally:
            await ui.close()
            await host.close()


# ── Scenario C: ui-entered after the attach response ────────────


class TestLifecycleOrdering:
    @pytest.mark.asyncio
    async def test_ui_entered_after_attach_response(self):
        host = _host()
        await host.run()
        host_side, peer = await stream_pair()
        cid = await host.channels.adopt_stream(host_side)
        try:
            peer.send(encode_message(Request(msgid=1, method="subscribe", args=["ui-entered"])))
            peer.send(encode_message(Request(msgid=2, method="ui_attach", args=[20, 4, {"ext_linegrid": True}])))
            await peer.drain()

            msgs = await read_messages(peer, 4)
            assert msgs[0] == Response(msgid=1, error=None, result=None)
            assert msgs[1] == Response(msgid=2, error=None, result=None)
            assert isinstance(msgs[2], Notification) and msgs[2].method == "redraw"
            assert msgs[3] == Notification(method="ui-entered", args=[{"channel_id": cid}])
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{cid}"]
        finally:
            await peer.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_listen_channel_lifecycle_log(self, socket_dir):
        host = _host()
        address = new_address(socket_dir)
        await host.channels.listen(address)
        await host.run()
        accept = asyncio.ensure_future(host.channels.listen_channel(address))
        client = Session(await open_connect(address))
        client.start()
        try:
            cid = await asyncio.wait_for(accept, 5)
            info = await client.request("get_api_info")
            assert info[0] == cid
            await client.request("ui_attach", 30, 5, {"ext_linegrid": True})
            log = await client.request("lifecycle_log")
            while len(log) < 2:
                await asyncio.sleep(0.01)
                log = await client.request("lifecycle_log")
            assert log == ["editor-ready", f"ui-entered:{cid}"]
        finally:
            await client.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_editor_ready_fires_once(self):
        host = _host()
        await host.run()
        first, ui1 = await connect_ui(host)
        second, ui2 = await connect_ui(host)
        try:
            await ui1.attach(10, 3, ext_linegrid=True)
            await ui1.wait_for(lambda m: m.flushes > 0)
            await ui2.attach(10, 3, ext_linegrid=True)
            await ui2.wait_for(lambda m: m.flushes > 0)
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{first}", f"ui-entered:{second}"]
        finally:
            await ui1.close()
            await ui2.close()
            await host.close()


# ── Racing attaches ─────────────────────────────────────────────


class TestRacingAttach:
    @pytest.mark.asyncio
    async def test_only_one_pager(self):
        host = _host()
        await host.run(pre_commands=['echoerr "only once"'])
        a_id, a = await connect_ui(host)
        b_id, b = await connect_ui(host)
        try:
            await asyncio.gather(
                a.attach(50, 6, ext_linegrid=True),
                b.attach(50, 6, ext_linegrid=True),
            )
            claimant = host.startup.claimant
            assert claimant in (a_id, b_id)
            winner, loser = (a, b) if claimant == a_id else (b, a)
            loser_id = b_id if claimant == a_id else a_id

            await winner.wait_for_text(PAGER_PROMPT)
            await loser.wait_for(lambda m: m.lines() == _blank_screen(6))
            assert all("only once" not in str(batch) for batch in loser.batches)
            assert host.startup.state is BufferState.FROZEN
            assert host.ui(claimant).in_pager

            await winner.input("<CR>")
            await winner.wait_for(lambda m: m.lines() == _blank_screen(6))
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{loser_id}", f"ui-entered:{claimant}"]
        finally:
            await a.close()
            await b.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_late_attach_sees_no_replay(self):
        host = _host()
        await host.run(pre_commands=['echoerr "early"'])
        first, ui1 = await connect_ui(host)
        try:
            await ui1.attach(40, 5, ext_linegrid=True)
            await ui1.wait_for_text(PAGER_PROMPT)
            await ui1.input("<CR>")
            await ui1.wait_for(lambda m: m.lines() == _blank_screen(5))
        finally:
            await ui1.close()

        second, ui2 = await connect_ui(host)
        try:
            await ui2.attach(40, 5, ext_linegrid=True)
            await ui2.wait_for(lambda m: m.flushes > 0)
            assert "early" not in ui2.mirror.text()
            assert PAGER_PROMPT not in ui2.mirror.text()
        finally:
            await ui2.close()
            await host.close()


# ── Colors ──────────────────────────────────────────────────────


class TestColors:
    @pytest.mark.asyncio
    async def test_one_default_colors_set_with_final_color(self):
        host = _host()
        await host.run(
            pre_commands=[
                'echoerr "one"',
                "hi Normal guibg=#111111",
                'echoerr "two"',
                "hi Normal guibg=#222222 guifg=green",
            ]
        )
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(60, 8, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            assert ui.mirror.lines()[-4:] == [HEADER, "one", "two", PAGER_PROMPT]
            await ui.input("<CR>")
            await ui.wait_for(lambda m: m.lines() == _blank_screen(8))

            assert len(ui.mirror.default_colors_calls) == 1
            fg, bg, sp, _, _ = ui.mirror.default_colors_calls[0]
            assert (fg, bg) == (0x00FF00, 0x222222)
            assert sp == host.editor.colors[2]
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_attach_colors_come_from_startup_replay(self):
        host = _host()
        base = host.editor.colors
        await host.run(pre_commands=["hi Normal guibg=#102030", "hi Normal guifg=#aabbcc"])
        cid, ui = await connect_ui(host)
        original = StartupReplay.final_colors
        try:
            with patch.object(StartupReplay, "final_colors", autospec=True, side_effect=original) as final_colors:
                await ui.attach(20, 4, ext_linegrid=True)
                await ui.wait_for(lambda m: m.flushes > 0)
            final_colors.assert_called_once()
            replay_base = final_colors.call_args[0][1]
            assert (replay_base.fg, replay_base.bg, replay_base.sp) == base

            assert len(ui.mirror.default_colors_calls) == 1
            assert ui.mirror.default_colors == (0xAABBCC, 0x102030, base[2])
            assert host.ui(cid).replay_colors == ui.mirror.default_colors
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_change_while_paging_is_deferred(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 5, ext_linegrid=True)
            await ui.wait_for_text(PAGER_PROMPT)
            host.set_default_colors(bg=0x333333)
            await asyncio.sleep(0.05)
            assert len(ui.mirror.default_colors_calls) == 1

            await ui.input("<CR>")
            await ui.wait_for(lambda m: len(m.default_colors_calls) == 2)
            assert ui.mirror.default_colors[1] == 0x333333
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_live_change_after_attach(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(20, 4, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            host.set_colorscheme("vim")
            await ui.wait_for(lambda m: len(m.default_colors_calls) == 2)
            assert ui.mirror.default_colors[:2] == (0x000000, 0xFFFFFF)
        finally:
            await ui.close()
            await host.close()


# ── Attach errors ───────────────────────────────────────────────


class TestAttachErrors:
    @pytest.mark.asyncio
    async def test_invalid_size_is_retryable(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            with pytest.raises(AttachError) as exc:
                await ui.attach(0, 8)
            assert exc.value.embed_message == "Expected width > 0 and height > 0"
            assert host.ui(cid) is None
            assert host.channels.get(cid).ui_state is UiState.UNATTACHED

            await ui.attach(10, 3, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            assert host.channels.get(cid).ui_state is UiState.ATTACHED
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_unknown_option(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            with pytest.raises(AttachError, match="No such UI option: ext_bogus"):
                await ui.attach(10, 3, ext_bogus=True)
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_double_attach(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(10, 3, ext_linegrid=True)
            with pytest.raises(AttachError, match="already attached"):
                await ui.attach(10, 3, ext_linegrid=True)
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_wrong_arg_count(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            with pytest.raises(InvalidArgs):
                await ui.session.request("ui_attach", 10)
        finally:
            await ui.close()
            await host.close()


# ── Other RPC methods ───────────────────────────────────────────


class TestRpcMethods:
    @pytest.mark.asyncio
    async def test_get_api_info(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            channel_id, info = await ui.session.request("get_api_info")
            assert channel_id == cid
            assert [f["name"] for f in info["functions"]] == list(HOST_METHODS)
            assert "ext_linegrid" in info["ui_options"]
            assert info["version"]["api_level"] >= 1
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_input_before_attach(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            with pytest.raises(InvalidArgs):
                await ui.input("i")
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_input_after_attach(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(10, 3, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            assert await ui.input("ié") == 3
            assert host.editor.typeahead == ["ié"]
            with pytest.raises(InvalidArgs):
                await ui.session.request("input", 5)
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_try_resize(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(20, 4, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            await ui.session.request("ui_try_resize", 30, 6)
            await ui.wait_for(lambda m: (m.width, m.height) == (30, 6) and m.lines() == _blank_screen(6))
            with pytest.raises(InvalidArgs):
                await ui.session.request("ui_try_resize", 0, 6)
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_detach_and_reattach(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(20, 4, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            await ui.session.request("ui_detach")
            assert host.ui(cid) is None
            assert host.bus.fired(LifecycleEvent.UI_LEFT)
            with pytest.raises(InvalidArgs):
                await ui.session.request("ui_detach")
            with pytest.raises(InvalidArgs):
                await ui.input("x")

            await ui.attach(20, 4, ext_linegrid=True)
            await ui.wait_for(lambda m: len(m.default_colors_calls) == 2)
            assert host.ui(cid).attached
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host, record=("ui-entered",))
        try:
            await ui.session.request("subscribe", "ui-entered")
            await ui.attach(20, 4, ext_linegrid=True)
            await ui.wait_for(lambda m: ui.notifications)
            assert ui.notifications == [("ui-entered", [{"channel_id": cid}])]

            await ui.session.request("unsubscribe", "ui-entered")
            with pytest.raises(InvalidArgs):
                await ui.session.request("subscribe", "no-such-event")
        finally:
            await ui.close()
            await host.close()

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        host = _host()
        cid, ui = await connect_ui(host)
        try:
            with pytest.raises(MethodNotFound):
                await ui.session.request("nvim_command", "q")
        finally:
            await ui.close()
            await host.close()


# ── Legacy encoding ─────────────────────────────────────────────


class TestLegacyEncoding:
    @pytest.mark.asyncio
    async def test_screen_without_linegrid(self):
        host = _host()
        await host.run(pre_commands=['echoerr "legacy"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(30, 5)
            await ui.wait_for_text(PAGER_PROMPT)
            assert "legacy" in ui.mirror.text()
            await ui.input("<CR>")
            await ui.wait_for(lambda m: m.lines() == _blank_screen(5))
            assert "put" in ui.mirror.events
            assert "grid_line" not in ui.mirror.events
            assert ui.mirror.events.count("default_colors_set") == 1
        finally:
            await ui.close()
            await host.close()


# ── Teardown ────────────────────────────────────────────────────


class TestTeardown:
    @pytest.mark.asyncio
    async def test_claimant_leaving_freezes_buffer(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        await ui.attach(40, 5, ext_linegrid=True)
        await ui.wait_for_text(PAGER_PROMPT)
        session = host.channels.channel_for(cid)
        await ui.close()
        await asyncio.wait_for(session.wait_closed(), 5)
        try:
            assert host.ui(cid) is None
            assert host.startup.frozen
            assert host.lifecycle_log() == []
            assert not host.bus.fired(LifecycleEvent.UI_LEFT)
        finally:
            await host.close()

    @pytest.mark.asyncio
    async def test_requests_fail_after_host_closes_channel(self):
        host = _host()
        await host.run()
        cid, ui = await connect_ui(host)
        await ui.attach(10, 3, ext_linegrid=True)
        await ui.wait_for(lambda m: m.flushes > 0)
        await host.channels.close_channel(cid)
        await asyncio.wait_for(ui.session.wait_closed(), 5)
        try:
            with pytest.raises(ChannelClosed):
                await ui.input("x")
            assert host.bus.fired(LifecycleEvent.UI_LEFT)
            with pytest.raises(ChannelClosed):
                host.channels.channel_for(cid)
        finally:
            await host.close()

    @pytest.mark.asyncio
    async def test_close_releases_waiting_pager(self):
        host = _host()
        await host.run(pre_commands=['echoerr "x"'])
        cid, ui = await connect_ui(host)
        await ui.attach(40, 5, ext_linegrid=True)
        await ui.wait_for_text(PAGER_PROMPT)
        await host.close()
        await asyncio.wait_for(ui.session.wait_closed(), 5)
        assert host.channels.channels() == []
        assert host.lifecycle_log() == []


# ── Headless ────────────────────────────────────────────────────


class TestHeadless:
    @pytest.mark.asyncio
    async def test_diagnostics_to_stderr(self, capsys):
        host = _host(wait_for_ui=False)
        failures = await host.run(pre_commands=['echoerr "headless"'])
        assert failures == 1
        err = capsys.readouterr().err
        assert HEADER in err
        assert "headless" in err
        assert host.lifecycle_log() == ["editor-ready"]
        assert host.startup.frozen
        await host.close()

    @pytest.mark.asyncio
    async def test_later_attach_has_no_pager(self, capsys):
        host = _host(wait_for_ui=False)
        await host.run(pre_commands=['echoerr "headless"'])
        cid, ui = await connect_ui(host)
        try:
            await ui.attach(40, 5, ext_linegrid=True)
            await ui.wait_for(lambda m: m.flushes > 0)
            assert PAGER_PROMPT not in ui.mirror.text()
            # The last message stays on the message line
            assert ui.mirror.lines()[-1] == "headless"
            assert host.lifecycle_log() == ["editor-ready", f"ui-entered:{cid}"]
        finally:
            await ui.close()
            await host.close()

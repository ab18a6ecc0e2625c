"""Tests for control_layer module."""

import io
import logging
import signal

import pytest
from rich.console import Console

from agent_invoker import OutputBuffer
from config import UiConfig
from control_layer import ControlLayer, HeadlessControl, Intent, decode_keys, highlight_output
from run_state import IterationRecord, IterationStatus, LoopState, RunContext

CONSOLE_HEIGHT = 30
VIEWPORT = 15  # 30 minus header, footer, log pane and body borders


def make_record(index: int, text: str = "", status: IterationStatus = IterationStatus.SUCCEEDED) -> IterationRecord:
    buffer = OutputBuffer()
    buffer.append(text)
    record = IterationRecord(index=index, buffer=buffer)
    record.status = status
    return record


@pytest.fixture
def context() -> RunContext:
    context = RunContext()
    context.reset(prd_name="Demo PRD", max_iterations=5)
    context.state = LoopState.RUNNING
    context.remaining_tasks = 2
    context.completed_tasks = 1
    return context


@pytest.fixture
def console() -> Console:
    return Console(
        file=io.StringIO(), width=160, height=CONSOLE_HEIGHT,
        record=True, color_system=None,
    )


@pytest.fixture
def layer(context: RunContext, console: Console) -> ControlLayer:
    return ControlLayer(context, UiConfig(page_lines=10), console=console)


def rendered(layer: ControlLayer, console: Console) -> str:
    console.print(layer.render())
    return console.export_text()


class TestDecodeKeys:
    def test_plain_keys(self) -> None:
        assert decode_keys("q") == [Intent.STOP]
        assert decode_keys("R") == [Intent.RESUME]
        assert decode_keys("x") == [Intent.KILL]
        assert decode_keys("\x03") == [Intent.KILL]

    def test_arrow_sequences(self) -> None:
        assert decode_keys("\x1b[D\x1b[C") == [Intent.PREVIOUS, Intent.NEXT]
        assert decode_keys("\x1b[A\x1bOB") == [Intent.SCROLL_UP, Intent.SCROLL_DOWN]

    def test_paging_and_end(self) -> None:
        assert decode_keys("\x1b[5~\x1b[6~") == [Intent.PAGE_UP, Intent.PAGE_DOWN]
        assert decode_keys("\x1b[F") == [Intent.FOLLOW_LIVE]
        assert decode_keys("\x1b[4~") == [Intent.FOLLOW_LIVE]

    def test_unknown_input_is_dropped(self) -> None:
        assert decode_keys("z\x1b[2~\x1b[15~") == []
        assert decode_keys("\x1b[2~q") == [Intent.STOP]


class TestIntents:
    def test_stop_and_resume(self, layer: ControlLayer, context: RunContext) -> None:
        layer.handle_input("q")
        assert context.control.stop_requested
        layer.handle_input("r")
        assert not context.control.stop_requested

    def test_kill(self, layer: ControlLayer, context: RunContext) -> None:
        assert layer.handle_input("\x03") == [Intent.KILL]
        assert context.control.kill_requested

    def test_navigation_between_iterations(self, layer: ControlLayer, context: RunContext) -> None:
        context.records.extend([make_record(1, "one"), make_record(2, "two"), make_record(3, "three")])
        assert layer.displayed_record().index == 3

        layer.apply(Intent.PREVIOUS)
        assert layer.displayed_record().index == 2
        layer.apply(Intent.PREVIOUS)
        layer.apply(Intent.PREVIOUS)
        assert layer.displayed_record().index == 1

        layer.apply(Intent.NEXT)
        assert layer.displayed_record().index == 2
        layer.apply(Intent.FOLLOW_LIVE)
        assert context.control.cursor.following_live

    def test_no_records(self, layer: ControlLayer) -> None:
        layer.apply(Intent.PREVIOUS)
        layer.apply(Intent.SCROLL_UP)
        assert layer.displayed_record() is None

    def test_scroll_and_page(self, layer: ControlLayer, context: RunContext) -> None:
        text = "\n".join(f"line {n}" for n in range(50))
        context.records.append(make_record(1, text, IterationStatus.RUNNING))
        cursor = context.control.cursor
        bottom = 50 - VIEWPORT

        layer.apply(Intent.SCROLL_UP)
        assert cursor.scroll == bottom - 1
        layer.apply(Intent.PAGE_UP)
        assert cursor.scroll == bottom - 11
        layer.apply(Intent.PAGE_DOWN)
        assert cursor.scroll == bottom - 1
        layer.apply(Intent.SCROLL_DOWN)
        assert cursor.scroll is None

    def test_never_mutates_records(self, layer: ControlLayer, context: RunContext) -> None:
        record = make_record(1, "out", IterationStatus.RUNNING)
        context.records.append(record)
        layer.handle_input("q\x1b[D\x1b[Ax")
        assert record.status == IterationStatus.RUNNING
        assert record.output == "out"

    def test_new_iteration_reattaches_scrolled_live_view(
        self, layer: ControlLayer, console: Console, context: RunContext,
    ) -> None:
        text = "\n".join(f"line {n}" for n in range(50))
        context.records.append(make_record(1, text))
        layer.apply(Intent.PAGE_UP)
        assert context.control.cursor.scroll is not None

        context.records.append(make_record(2, "short\nnew run tail", IterationStatus.RUNNING))
        output = rendered(layer, console)
        assert context.control.cursor.scroll is None
        assert "new run tail" in output


class TestRender:
    def test_header_shows_progress(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        context.records.append(make_record(2, "hello", IterationStatus.RUNNING))
        text = rendered(layer, console)
        assert "Demo PRD" in text
        assert "Iteration 2/5" in text
        assert "Tasks 1/3" in text
        assert "LIVE" in text

    def test_shows_tail_of_live_output(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        text = "\n".join(f"line {n}" for n in range(50))
        context.records.append(make_record(1, text, IterationStatus.RUNNING))
        output = rendered(layer, console)
        assert "line 49" in output
        assert "line 35" in output
        assert "line 34" not in output

    def test_ansi_colours_are_rendered_not_printed(
        self, layer: ControlLayer, console: Console, context: RunContext,
    ) -> None:
        context.records.append(make_record(1, "\x1b[32mgreen text\x1b[0m"))
        output = rendered(layer, console)
        assert "green text" in output
        assert "[32m" not in output

    def test_history_output_not_lost(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        """Output produced while viewing history shows up on return to live."""
        live = make_record(2, "before\n", IterationStatus.RUNNING)
        context.records.extend([make_record(1, "old run"), live])
        layer.apply(Intent.PREVIOUS)
        live.buffer.append("produced while away\n")
        layer.apply(Intent.FOLLOW_LIVE)
        assert "produced while away" in rendered(layer, console)

    def test_stop_queued_mode(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        layer.apply(Intent.STOP)
        assert "STOP QUEUED" in rendered(layer, console)

    def test_terminal_outcome_label(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        context.state = LoopState.STOPPED_BY_CAP
        assert "Iteration cap reached" in rendered(layer, console)

    def test_log_pane(self, layer: ControlLayer, console: Console) -> None:
        logger = logging.getLogger("test.control_layer")
        logger.addHandler(layer.log_handler)
        logger.setLevel(logging.INFO)
        try:
            logger.info("reconciled two tasks")
        finally:
            logger.removeHandler(layer.log_handler)
        assert "reconciled two tasks" in rendered(layer, console)

    def test_markdown_lines_are_styled(self, layer: ControlLayer, console: Console, context: RunContext) -> None:
        context.records.append(make_record(1, "## Plan\n- run `pytest` first"))
        output = rendered(layer, console)
        assert "## Plan" in output
        assert "- run `pytest` first" in output


class TestHighlightOutput:
    def test_plain_text_is_unchanged(self) -> None:
        window = "# Title\n- item with `code`\nplain **bold** line"
        assert highlight_output(window).plain == window

    def test_header_bullet_and_code_styles(self) -> None:
        body = highlight_output("# Title\n- item with `code`")
        styles = {(span.start, span.end, str(span.style)) for span in body.spans}
        assert (0, 7, "bold cyan") in styles
        assert (8, 10, "yellow") in styles
        code_start = body.plain.index("`code`")
        assert (code_start, code_start + 6, "bold magenta") in styles

    def test_numbered_bullet_and_bold(self) -> None:
        body = highlight_output("1. **done** here")
        styles = {(span.start, span.end, str(span.style)) for span in body.spans}
        assert (0, 3, "yellow") in styles
        assert (3, 11, "bold") in styles

    def test_ansi_lines_are_parsed(self) -> None:
        body = highlight_output("# heading\n\x1b[32mgreen text\x1b[0m")
        assert body.plain == "# heading\ngreen text"
        assert "[32m" not in body.plain

    def test_hash_without_space_is_not_a_header(self) -> None:
        body = highlight_output("#hashtag")
        assert not any(str(span.style) == "bold cyan" for span in body.spans)


class TestSupported:
    def test_not_a_tty(self) -> None:
        assert not ControlLayer.supported(io.StringIO(), io.StringIO())


class TestHeadlessControl:
    def test_streams_each_iteration_once(self, context: RunContext) -> None:
        stream = io.StringIO()
        headless = HeadlessControl(context, stream=stream)
        first = make_record(1, "alpha\n", IterationStatus.RUNNING)
        context.records.append(first)
        headless.drain()
        first.buffer.append("beta\n")
        headless.drain()
        context.records.append(make_record(2, "gamma\n"))
        headless.drain()
        headless.drain()

        out = stream.getvalue()
        assert out.count("Iteration 1") == 1
        assert out.count("Iteration 2") == 1
        assert out.count("alpha") == 1
        assert out.index("alpha") < out.index("beta") < out.index("gamma")

    def test_first_interrupt_stops_second_kills(self, context: RunContext) -> None:
        headless = HeadlessControl(context, stream=io.StringIO())
        headless.handle_interrupt(signal.SIGINT, None)
        assert context.control.stop_requested
        assert not context.control.kill_requested
        headless.handle_interrupt(signal.SIGINT, None)
        assert context.control.kill_requested

    def test_installs_and_restores_sigint_handler(self, context: RunContext) -> None:
        previous = signal.getsignal(signal.SIGINT)
        headless = HeadlessControl(context, stream=io.StringIO(), poll_interval=0.01)
        with headless:
            assert signal.getsignal(signal.SIGINT) == headless.handle_interrupt
        assert signal.getsignal(signal.SIGINT) == previous

    def test_stop_drains_remaining_output(self, context: RunContext) -> None:
        stream = io.StringIO()
        with HeadlessControl(context, stream=stream, poll_interval=10.0):
            context.records.append(make_record(1, "final words\n"))
        assert "final words" in stream.getvalue()

    def test_final_drain_flushes_late_output_of_earlier_iteration(self, context: RunContext) -> None:
        stream = io.StringIO()
        headless = HeadlessControl(context, stream=stream)
        first = make_record(1, "alpha\n")
        context.records.extend([first, make_record(2, "beta\n", IterationStatus.RUNNING)])
        headless.drain()
        first.buffer.append("straggler\n")
        headless.drain()
        assert "straggler" not in stream.getvalue()

        headless.drain(final=True)
        out = stream.getvalue()
        assert "Iteration 1 (late output)" in out
        assert out.count("straggler") == 1
        headless.drain(final=True)
        assert stream.getvalue().count("straggler") == 1

    def test_stop_flushes_late_output(self, context: RunContext) -> None:
        stream = io.StringIO()
        first = make_record(1, "alpha\n")
        with HeadlessControl(context, stream=stream, poll_interval=10.0) as headless:
            context.records.extend([first, make_record(2, "beta\n")])
            headless.drain()
            first.buffer.append("late words\n")
        assert "late words" in stream.getvalue()

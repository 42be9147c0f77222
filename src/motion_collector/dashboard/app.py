"""
Dash application for connecting to the IMU, recording labeled motions and exporting them.
"""

import asyncio
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Optional, Tuple, TypeVar

import dash  # type: ignore
import plotly.graph_objects as go  # type: ignore
from dash import dcc, html, Input, Output, State

from ..collector import CollectorStatus, MotionCollector
from ..errors import MotionCollectorError
from ..export import export_filename
from ..link_manager import ConnectionState
from ..recording import RecordedMotion, SessionState
from .plots import create_motion_plot, format_sample

logger = logging.getLogger(__name__)

T = TypeVar("T")

PANEL_STYLE = {
    "width": "32%",
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}

PLOT_INTERVAL_MS = 2000

ACTIONS = (
    "connect-btn",
    "disconnect-btn",
    "calibrate-btn",
    "test-message-btn",
    "start-recording-btn",
    "stop-recording-btn",
    "clear-recordings-btn",
)


def _button_style(color: str, disabled: bool) -> dict:
    return {
        "marginRight": "10px",
        "marginBottom": "5px",
        "padding": "8px 16px",
        "backgroundColor": "#6c757d" if disabled else color,
        "color": "white",
        "border": "none",
        "borderRadius": "4px",
        "cursor": "not-allowed" if disabled else "pointer",
        "opacity": "0.6" if disabled else "1.0",
    }


class CollectorApp:
    """Web client for the motion collector.

    The collector lives on a dedicated asyncio event loop running in a daemon
    thread, so BLE callbacks, the recording ticker and Dash requests never
    share a thread. Dash callbacks hand coroutines to that loop with
    ``asyncio.run_coroutine_threadsafe`` and wait for the result.

    Attributes:
        collector: Controller owning link, stream, session and recordings.
        update_interval: UI refresh interval in milliseconds.
        app: Dash application instance.
    """

    def __init__(
        self,
        collector: MotionCollector,
        update_rate: int = 4,
        action_timeout: float = 60.0,
    ):
        self.collector = collector
        self.update_interval = 1000 // update_rate
        self._action_timeout = action_timeout

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()

        self._plotted: Optional[RecordedMotion] = None
        self._figure = create_motion_plot(None)

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    # -- event loop ----------------------------------------------------

    def start(self) -> None:
        """Start the background event loop (idempotent)."""
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._loop_ready.clear()
        self._loop_thread = threading.Thread(
            target=self._run_loop, daemon=True, name="CollectorLoop"
        )
        self._loop_thread.start()
        self._loop_ready.wait(timeout=5.0)

    def _run_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._loop_ready.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()
            logger.info("🏁 Collector event loop stopped")

    def submit(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run ``coro`` on the collector loop and wait for its result."""
        if self._loop is None or not self._loop.is_running():
            raise RuntimeError("Collector event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)  # type: ignore[arg-type]
        try:
            return future.result(timeout or self._action_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise

    def stop(self) -> None:
        """Disconnect and stop the background loop."""
        if self._loop is None or not self._loop.is_running():
            return
        logger.info("🛑 Disconnecting and stopping collector loop...")
        try:
            self.submit(self.collector.disconnect(), timeout=10.0)
        except (MotionCollectorError, FutureTimeoutError) as e:
            logger.warning(f"⚠️ Error during disconnect: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=5.0)
            if self._loop_thread.is_alive():
                logger.warning("⚠️ Collector loop thread did not stop gracefully")

    # -- layout --------------------------------------------------------

    def _setup_layout(self) -> None:
        """Connection, live data, recording and export panels above the motion plot."""
        self.app.layout = html.Div(
            [
                html.H1("IMU Motion Collector", style={"textAlign": "center"}),
                html.Div(id="error-banner", children=""),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection"),
                                html.Div(
                                    [
                                        html.Button("🔗 Connect", id="connect-btn"),
                                        html.Button("✖️ Disconnect", id="disconnect-btn"),
                                        html.Button("🎯 Calibrate", id="calibrate-btn"),
                                        html.Button("✉️ Send Test Message", id="test-message-btn"),
                                    ],
                                    style={"marginBottom": "10px"},
                                ),
                                html.Div(id="connection-status", children="Initializing..."),
                                html.Div(id="connection-details", children=""),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Recording"),
                                html.Label("Motion name:", style={"fontSize": "12px"}),
                                dcc.Input(
                                    id="label-input",
                                    type="text",
                                    placeholder="e.g. squat",
                                    debounce=False,
                                    style={"width": "100%", "marginBottom": "8px"},
                                ),
                                html.Label("Duration (seconds):", style={"fontSize": "12px"}),
                                dcc.Input(
                                    id="duration-input",
                                    type="number",
                                    min=1,
                                    step=1,
                                    value=self.collector.session.duration_target,
                                    style={"width": "100%", "marginBottom": "8px"},
                                ),
                                html.Div(
                                    [
                                        html.Button("🔴 Record", id="start-recording-btn"),
                                        html.Button("⏹️ Stop", id="stop-recording-btn"),
                                    ],
                                    style={"marginBottom": "10px"},
                                ),
                                html.Div(id="recording-status", children="⚪ Ready to record"),
                                html.Div(
                                    html.Div(
                                        id="recording-progress-bar",
                                        style={"width": "0%", "height": "10px", "backgroundColor": "#dc3545"},
                                    ),
                                    style={"width": "100%", "backgroundColor": "#eee", "marginTop": "6px"},
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Recorded Motions"),
                                html.Div(id="recordings-list", children="No recordings yet"),
                                html.Div(
                                    [
                                        html.Button("💾 Export CSV", id="export-btn"),
                                        html.Button("🗑️ Clear", id="clear-recordings-btn"),
                                    ],
                                    style={"marginTop": "10px"},
                                ),
                                dcc.Download(id="export-download"),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ],
                    style={"margin": "20px", "display": "flex", "gap": "10px"},
                ),
                html.Div(
                    [
                        html.H3("Latest Sample"),
                        html.Div(id="latest-sample", children="No data"),
                    ],
                    style={"margin": "0 25px"},
                ),
                dcc.Graph(id="motion-plot", style={"height": "600px"}),
                dcc.Interval(id="interval-component", interval=self.update_interval, n_intervals=0),
                dcc.Interval(id="plot-interval", interval=PLOT_INTERVAL_MS, n_intervals=0),
                # Hidden div to store the result of the last action
                html.Div(id="action-store", style={"display": "none"}),
            ]
        )

    # -- callbacks -----------------------------------------------------

    def _setup_callbacks(self) -> None:
        """Register the action, status refresh and export callbacks."""

        @self.app.callback(  # type: ignore
            Output("action-store", "children"),
            [Input(action, "n_clicks") for action in ACTIONS],
            [State("label-input", "value"), State("duration-input", "value")],
            prevent_initial_call=True,
        )
        def handle_action(*args: Any) -> str:
            label, duration = args[-2], args[-1]
            action = dash.ctx.triggered_id
            if action is None:
                return "idle"
            return self.perform_action(action, label, duration)

        @self.app.callback(  # type: ignore
            [
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("latest-sample", "children"),
                Output("recording-status", "children"),
                Output("recording-progress-bar", "style"),
                Output("recordings-list", "children"),
                Output("error-banner", "children"),
            ]
            + [Output(action, "disabled") for action in ACTIONS]
            + [Output(action, "style") for action in ACTIONS],
            [Input("interval-component", "n_intervals"), Input("action-store", "children")],
        )
        def update_status(n_intervals: int, _action: Optional[str]) -> Tuple[Any, ...]:
            status = self.collector.status()
            if n_intervals % 40 == 0:
                logger.debug(
                    f"🔍 UI Debug: state={status.connection_state.value}, "
                    f"session={status.session_state.value}, rate={status.stream.sample_rate:.1f}Hz"
                )
            return self.render_status(status)

        @self.app.callback(  # type: ignore
            Output("motion-plot", "figure"),
            [Input("plot-interval", "n_intervals"), Input("action-store", "children")],
        )
        def update_plot(_n_intervals: int, _action: Optional[str]):  # type: ignore
            return self.motion_figure()

        @self.app.callback(  # type: ignore
            Output("export-download", "data"),
            Input("export-btn", "n_clicks"),
            prevent_initial_call=True,
        )
        def export_csv(n_clicks: int):  # type: ignore
            if not n_clicks:
                return None
            try:
                text = self.collector.export_csv()
            except MotionCollectorError as e:
                logger.error(f"❌ Export failed: {e}")
                return None
            logger.info("💾 Export prepared")
            return dcc.send_string(text, export_filename())

    def perform_action(self, action: str, label: Optional[str], duration: Optional[float]) -> str:
        """Execute one button action on the collector loop."""
        collector = self.collector
        try:
            if action == "connect-btn":
                peripheral = self.submit(collector.connect())
                logger.info(f"🔗 Connected to {peripheral}")
            elif action == "disconnect-btn":
                self.submit(collector.disconnect())
                logger.info("✖️ Disconnected")
            elif action == "calibrate-btn":
                self.submit(collector.calibrate())
                logger.info("🎯 Calibration command sent")
            elif action == "test-message-btn":
                self.submit(collector.send_test_message())
                logger.info("✉️ Test message sent")
            elif action == "start-recording-btn":
                self.submit(collector.start_recording(label or "", duration))
                logger.info(f"🎬 Recording started: {label}")
            elif action == "stop-recording-btn":
                motion = self.submit(collector.stop_recording())
                if motion is not None:
                    logger.info(f"🏁 Recording stopped: {motion.sample_count} samples")
            elif action == "clear-recordings-btn":
                collector.clear_recordings()
            else:
                return "idle"
        except MotionCollectorError as e:
            logger.error(f"❌ {action} failed: {e}")
            return f"error:{action}"
        except FutureTimeoutError:
            logger.error(f"⏱️ {action} timed out")
            return f"timeout:{action}"
        return f"ok:{action}"

    def motion_figure(self) -> go.Figure:
        """Figure of the most recent motion, rebuilt only when that motion changes."""
        motions = self.collector.recordings.snapshot()
        last = motions[-1] if motions else None
        if last is not self._plotted:
            self._plotted = last
            self._figure = create_motion_plot(last)
        return self._figure

    def render_status(self, status: CollectorStatus) -> Tuple[Any, ...]:
        """Map a collector status snapshot onto the dashboard outputs."""
        connected = status.connection_state is ConnectionState.CONNECTED
        scanning = status.connection_state is ConnectionState.SCANNING
        recording = status.session_state in (SessionState.ACTIVE, SessionState.FINALIZING)

        if connected:
            connection_text, color = "🟢 Connected", "green"
        elif scanning:
            connection_text, color = "🟡 Scanning...", "orange"
        else:
            connection_text, color = "🔴 Disconnected", "red"
        connection_status = html.Span(
            connection_text, style={"color": color, "fontWeight": "bold", "fontSize": "16px"}
        )
        connection_details = html.Div(
            [
                html.P(
                    f"🔵 Device: {status.peripheral}" if status.peripheral else "🔵 Device: none",
                    style={"margin": "5px 0", "fontSize": "14px"},
                ),
                html.P(
                    f"🎯 Calibrated: {'yes' if status.calibrated else 'no'}",
                    style={"margin": "5px 0", "fontSize": "14px"},
                ),
                html.P(
                    f"⏱️ Update Rate: {status.stream.sample_rate:.1f} Hz "
                    f"({status.stream.samples_received} samples, {status.decode_errors} bad frames)",
                    style={"margin": "5px 0", "fontSize": "14px"},
                ),
            ]
        )

        if status.session_state is SessionState.FINALIZING:
            recording_text = f"⏳ Finalizing '{status.label}' ({status.samples_recorded} samples)"
        elif recording:
            recording_text = f"🔴 Recording '{status.label}' ({status.samples_recorded} samples)"
        else:
            recording_text = "⚪ Ready to record"
        progress_style = {
            "width": f"{status.progress * 100:.0f}%" if recording else "0%",
            "height": "10px",
            "backgroundColor": "#dc3545",
        }

        motions = self.collector.recordings.snapshot()
        if motions:
            recordings_list = html.Ul(
                [
                    html.Li(
                        f"{m.motion_name}: {m.sample_count} samples ({m.timestamp})",
                        style={"fontSize": "12px"},
                    )
                    for m in motions
                ]
            )
        else:
            recordings_list = html.P("No recordings yet", style={"fontSize": "12px", "color": "#666"})

        error_banner: Any = ""
        if status.last_error:
            error_banner = html.Div(
                f"⚠️ {status.last_error}",
                style={
                    "margin": "10px 25px",
                    "padding": "10px",
                    "backgroundColor": "#f8d7da",
                    "color": "#721c24",
                    "borderRadius": "4px",
                },
            )

        disabled = {
            "connect-btn": connected or scanning,
            "disconnect-btn": not connected,
            "calibrate-btn": not connected or recording,
            "test-message-btn": not connected,
            "start-recording-btn": not connected or recording,
            "stop-recording-btn": not recording,
            "clear-recordings-btn": recording or not motions,
        }
        colors = {
            "connect-btn": "#28a745",
            "disconnect-btn": "#dc3545",
            "calibrate-btn": "#17a2b8",
            "test-message-btn": "#007bff",
            "start-recording-btn": "#dc3545",
            "stop-recording-btn": "#343a40",
            "clear-recordings-btn": "#6c757d",
        }

        return (
            connection_status,
            connection_details,
            format_sample(status.latest),
            html.Span(recording_text, style={"fontWeight": "bold"}),
            progress_style,
            recordings_list,
            error_banner,
            *[disabled[a] for a in ACTIONS],
            *[_button_style(colors[a], disabled[a]) for a in ACTIONS],
        )

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the collector loop and serve the dashboard until interrupted."""
        self.start()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop()


def create_app(collector: MotionCollector, **kwargs: Any) -> CollectorApp:
    """Factory function to create the dashboard app."""
    return CollectorApp(collector=collector, **kwargs)

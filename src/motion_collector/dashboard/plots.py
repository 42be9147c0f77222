"""
Plot components for the motion collector dashboard.
"""

from typing import Optional, Sequence

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..recording import RecordedMotion
from ..wire_codec import SensorSample

AXIS_COLORS = {"X": "red", "Y": "green", "Z": "blue"}


def create_empty_figure(text: str = "No data available", height: int = 600) -> go.Figure:
    """Placeholder figure with a centered message."""
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text=text,
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(height=height, xaxis=dict(visible=False), yaxis=dict(visible=False))
    return fig


def _add_vector_traces(
    fig: go.Figure, samples: Sequence[SensorSample], attr: str, row: int
) -> None:
    index = list(range(len(samples)))
    for axis, color in AXIS_COLORS.items():
        values = [getattr(getattr(s, attr), axis.lower()) for s in samples]
        fig.add_trace(
            go.Scatter(
                x=index,
                y=values,
                mode="lines",
                name=f"{attr.capitalize()} {axis}",
                line=dict(color=color, width=1.5),
                legendgroup=attr,
            ),
            row=row,
            col=1,
        )


def create_motion_plot(motion: Optional[RecordedMotion], height: int = 600) -> go.Figure:
    """Accelerometer, gyroscope and temperature of one recorded motion.

    The x axis is the sample index; samples carry no device timestamp.
    """
    if motion is None or not motion.data:
        return create_empty_figure("No recorded motion yet", height=height)

    samples = motion.data
    fig = make_subplots(
        rows=3,
        cols=1,
        shared_xaxes=True,
        vertical_spacing=0.06,
        subplot_titles=("Accelerometer", "Gyroscope", "Temperature"),
    )
    _add_vector_traces(fig, samples, "accel", row=1)
    _add_vector_traces(fig, samples, "gyro", row=2)
    fig.add_trace(
        go.Scatter(
            x=list(range(len(samples))),
            y=[s.temp for s in samples],
            mode="lines",
            name="Temperature",
            line=dict(color="orange", width=1.5),
        ),
        row=3,
        col=1,
    )

    fig.update_yaxes(title_text="Acceleration", row=1, col=1)
    fig.update_yaxes(title_text="Angular Velocity", row=2, col=1)
    fig.update_yaxes(title_text="°C", row=3, col=1)
    fig.update_xaxes(title_text="Sample", row=3, col=1)
    fig.update_layout(
        title=f"{motion.motion_name} ({motion.sample_count} samples, {motion.timestamp})",
        height=height,
        margin=dict(l=50, r=20, t=80, b=50),
        legend=dict(orientation="h", yanchor="bottom", y=1.04, xanchor="right", x=1),
    )
    return fig


def format_sample(sample: Optional[SensorSample]) -> str:
    """One-line rendering of the latest sample."""
    if sample is None:
        return "No data"
    a, g = sample.accel, sample.gyro
    return (
        f"Accel: {a.x:.2f}, {a.y:.2f}, {a.z:.2f} | "
        f"Gyro: {g.x:.2f}, {g.y:.2f}, {g.z:.2f} | "
        f"Temp: {sample.temp:.1f}°C"
    )

#!/usr/bin/env python3
"""Render a latency trend PNG from a host's dc-connectivity CSV log.

Plots directory bind latency and ping latency per check run, draws the retry
threshold, and marks runs whose bind failed along the bottom axis.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from observers.dc_connectivity import observer, store
from observers.dc_connectivity.config import load_config

WIDTH, HEIGHT = 1000, 600
MARGIN_LEFT, MARGIN_RIGHT, MARGIN_TOP, MARGIN_BOTTOM = 80, 40, 70, 70

BACKGROUND = (18, 20, 24)
TEXT_COLOR = (235, 235, 235)
MUTED_COLOR = (180, 180, 180)
GRID_COLOR = (60, 62, 68)
BIND_COLOR = (90, 170, 255)
PING_COLOR = (120, 220, 140)
THRESHOLD_COLOR = (240, 180, 60)
FAILURE_COLOR = (230, 70, 70)


@dataclass
class Sample:
    timestamp: str
    bind_ms: Optional[float]
    ping_ms: Optional[float]
    bind_failed: bool


def _parse_latency(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def load_samples(path: Path, limit: int) -> List[Sample]:
    samples: List[Sample] = []
    for row in store.read_records(path):
        samples.append(
            Sample(
                timestamp=row.get("timestamp", ""),
                bind_ms=_parse_latency(row.get("directory_bind_latency_ms")),
                ping_ms=_parse_latency(row.get("ping_latency_ms")),
                bind_failed=row.get("directory_bind_status") == observer.BIND_FAILED,
            )
        )
    return samples[-limit:] if limit > 0 else samples


def _load_font(preferred_names: List[str], size: int) -> ImageFont.ImageFont:
    for name in preferred_names:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default()


def _scale(samples: List[Sample], threshold_ms: float) -> float:
    values = [s.bind_ms for s in samples if s.bind_ms is not None]
    values += [s.ping_ms for s in samples if s.ping_ms is not None]
    return max(values + [threshold_ms, 1.0]) * 1.1


def _points(values: Sequence[Optional[float]], y_max: float) -> List[Tuple[int, Optional[Tuple[float, float]]]]:
    plot_width = WIDTH - MARGIN_LEFT - MARGIN_RIGHT
    plot_height = HEIGHT - MARGIN_TOP - MARGIN_BOTTOM
    step = plot_width / max(len(values) - 1, 1)
    points = []
    for index, value in enumerate(values):
        if value is None:
            points.append((index, None))
            continue
        x = MARGIN_LEFT + index * step
        y = MARGIN_TOP + plot_height - (value / y_max) * plot_height
        points.append((index, (x, y)))
    return points


def _draw_series(draw: ImageDraw.ImageDraw, values: Sequence[Optional[float]], y_max: float, color) -> None:
    previous = None
    for _index, point in _points(values, y_max):
        if point is None:
            previous = None
            continue
        if previous is not None:
            draw.line([previous, point], fill=color, width=2)
        draw.ellipse([point[0] - 3, point[1] - 3, point[0] + 3, point[1] + 3], fill=color)
        previous = point


def render_png(samples: List[Sample], threshold_ms: float, output_path: Path, title: str) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    image = Image.new("RGB", (WIDTH, HEIGHT), color=BACKGROUND)
    draw = ImageDraw.Draw(image)

    title_font = _load_font(["DejaVuSans-Bold.ttf", "DejaVuSans.ttf"], 24)
    label_font = _load_font(["DejaVuSans.ttf"], 14)

    plot_bottom = HEIGHT - MARGIN_BOTTOM
    plot_right = WIDTH - MARGIN_RIGHT
    y_max = _scale(samples, threshold_ms)

    draw.text((MARGIN_LEFT, 24), title, fill=TEXT_COLOR, font=title_font)

    for fraction in (0.0, 0.25, 0.5, 0.75, 1.0):
        y = MARGIN_TOP + (plot_bottom - MARGIN_TOP) * (1 - fraction)
        draw.line([(MARGIN_LEFT, y), (plot_right, y)], fill=GRID_COLOR, width=1)
        draw.text((10, y - 8), f"{y_max * fraction:.0f} ms", fill=MUTED_COLOR, font=label_font)

    threshold_y = MARGIN_TOP + (plot_bottom - MARGIN_TOP) * (1 - threshold_ms / y_max)
    x = MARGIN_LEFT
    while x < plot_right:
        draw.line([(x, threshold_y), (min(x + 10, plot_right), threshold_y)], fill=THRESHOLD_COLOR, width=1)
        x += 18

    _draw_series(draw, [s.ping_ms for s in samples], y_max, PING_COLOR)
    _draw_series(draw, [s.bind_ms for s in samples], y_max, BIND_COLOR)

    failures = [0.0 if s.bind_failed else None for s in samples]
    for _index, point in _points(failures, y_max):
        if point is not None:
            draw.line([(point[0], plot_bottom - 8), (point[0], plot_bottom)], fill=FAILURE_COLOR, width=3)

    if samples:
        draw.text((MARGIN_LEFT, plot_bottom + 10), samples[0].timestamp, fill=MUTED_COLOR, font=label_font)
        last_label = samples[-1].timestamp
        draw.text(
            (plot_right - draw.textlength(last_label, font=label_font), plot_bottom + 10),
            last_label,
            fill=MUTED_COLOR,
            font=label_font,
        )

    legend_y = HEIGHT - 28
    legend_x = MARGIN_LEFT
    for label, color in (
        ("bind latency", BIND_COLOR),
        ("ping latency", PING_COLOR),
        (f"retry threshold {threshold_ms:g} ms", THRESHOLD_COLOR),
        ("bind failed", FAILURE_COLOR),
    ):
        draw.rectangle([legend_x, legend_y + 3, legend_x + 12, legend_y + 15], fill=color)
        draw.text((legend_x + 18, legend_y), label, fill=TEXT_COLOR, font=label_font)
        legend_x += 40 + int(draw.textlength(label, font=label_font))

    image.save(output_path)
    return output_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    config = load_config()
    parser = argparse.ArgumentParser(description="Render a latency trend PNG from a dc-connectivity log.")
    parser.add_argument("--log-dir", default=str(config.log_dir), help="Directory holding the CSV logs")
    parser.add_argument("--host", help="Host identity whose log to plot (default: this machine)")
    parser.add_argument("--output", help="PNG path (default: <log-dir>/<host>-latency.png)")
    parser.add_argument("--threshold-ms", type=float, default=config.retry_threshold_ms)
    parser.add_argument("--last", type=int, default=200, help="Plot only the most recent N runs (0 = all)")
    args = parser.parse_args(argv)

    host = args.host or observer.host_identity()
    log_dir = Path(args.log_dir)
    csv_path = store.log_path(log_dir, host)
    samples = load_samples(csv_path, args.last)
    if not samples:
        print(f"No check records found for {host} in {log_dir}.")
        return 0

    output_path = Path(args.output) if args.output else csv_path.with_name(f"{csv_path.stem}-latency.png")
    render_png(samples, args.threshold_ms, output_path, f"{host} directory latency ({len(samples)} runs)")
    print(str(output_path))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

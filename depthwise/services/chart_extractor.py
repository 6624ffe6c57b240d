"""Pull embedded chart payloads out of model text.

The model is prompted to wrap chart JSON in ``<chart_data>...</chart_data>``.
Valid spans are removed from the text and surfaced as a ``chart`` data
annotation; anything that does not validate is left in the text untouched.
"""
from __future__ import annotations

import json
import re
from numbers import Real
from typing import Any

from depthwise.models.events import DataAnnotation, TextDelta
from depthwise.services import streaming
from depthwise.services.logger import logger

OPEN_TAG = "<chart_data>"
CLOSE_TAG = "</chart_data>"

CHART_SPAN = re.compile(re.escape(OPEN_TAG) + r"(.*?)" + re.escape(CLOSE_TAG), re.DOTALL)

DATASET_DEFAULTS = {
    "borderColor": "#4CAF50",
    "backgroundColor": "rgba(76, 175, 80, 0.1)",
    "borderWidth": 2,
    "tension": 0.4,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _valid_dataset(dataset: Any) -> bool:
    return (
        isinstance(dataset, dict)
        and isinstance(dataset.get("label"), str)
        and isinstance(dataset.get("data"), list)
        and all(_is_number(v) for v in dataset["data"])
    )


def parse_chart(raw: str) -> dict[str, Any] | None:
    """Parse and validate one payload; returns the chart with defaults or None."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Chart payload is not valid JSON: {e}")
        return None

    # {type, role, content, data: chart} envelope
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict) and "datasets" not in payload:
        payload = payload["data"]
    if not isinstance(payload, dict):
        logger.warning("Chart payload is not an object")
        return None

    body = payload.get("chartData") if isinstance(payload.get("chartData"), dict) else payload
    labels = body.get("labels")
    datasets = body.get("datasets")
    if not isinstance(payload.get("type"), str):
        logger.warning("Chart payload rejected: missing chart type")
        return None
    if not isinstance(labels, list) or not isinstance(datasets, list):
        logger.warning("Chart payload rejected: labels and datasets must be lists")
        return None
    if not all(_valid_dataset(d) for d in datasets):
        logger.warning("Chart payload rejected: dataset needs a string label and numeric data")
        return None

    chart: dict[str, Any] = {
        "type": payload["type"],
        "labels": labels,
        "datasets": [{**DATASET_DEFAULTS, **d} for d in datasets],
    }
    if isinstance(payload.get("title"), str):
        chart["title"] = payload["title"]
    return chart


def extract_chart(text: str) -> tuple[str, dict[str, Any] | None]:
    """Strip valid chart spans from a finished message.

    Returns the remaining content (trimmed) and the first valid chart.
    Invalid spans stay in the content.
    """
    found: dict[str, Any] | None = None

    def _replace(match: re.Match) -> str:
        nonlocal found
        chart = parse_chart(match.group(1).strip())
        if chart is None:
            return match.group(0)
        if found is None:
            found = chart
        return ""

    content = CHART_SPAN.sub(_replace, text)
    if found is None:
        return text, None
    return content.strip(), found


class ChartPayloadExtractor:
    """Line-buffering stage between model text deltas and the encoder.

    Only complete lines are released. Lines inside an open chart span are held
    until the closing tag arrives, so a payload split across chunks is seen
    whole.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._span: list[str] = []
        self._seen: set[str] = set()
        self.charts: list[dict[str, Any]] = []

    @property
    def in_span(self) -> bool:
        return bool(self._span)

    def feed(self, chunk: str) -> list[TextDelta | DataAnnotation]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        out: list[TextDelta | DataAnnotation] = []
        for line in lines:
            out.extend(self._line(line + "\n"))
        return out

    def flush(self) -> list[TextDelta | DataAnnotation]:
        out: list[TextDelta | DataAnnotation] = []
        if self._buffer:
            remaining, self._buffer = self._buffer, ""
            out.extend(self._line(remaining))
        if self._span:
            logger.warning("Unterminated chart payload released as text")
            out.append(TextDelta(text="".join(self._span)))
            self._span = []
        return out

    def _line(self, line: str) -> list[TextDelta | DataAnnotation]:
        if self._span:
            self._span.append(line)
            if CLOSE_TAG not in line:
                return []
            text, self._span = "".join(self._span), []
        else:
            text = line

        if OPEN_TAG not in text:
            return [TextDelta(text=text)]

        # a span opened after the last close tag stays held for later lines
        start = text.rfind(OPEN_TAG)
        if start < text.rfind(CLOSE_TAG):
            return self._process(text)
        head, tail = text[:start], text[start:]
        if CLOSE_TAG not in head:
            self._span.append(text)
            return []
        self._span.append(tail)
        return self._process(head)

    def _process(self, text: str) -> list[TextDelta | DataAnnotation]:
        out: list[TextDelta | DataAnnotation] = []
        annotations: list[DataAnnotation] = []

        def _replace(match: re.Match) -> str:
            raw = match.group(1).strip()
            chart = parse_chart(raw)
            if chart is None:
                return match.group(0)
            key = json.dumps(chart, sort_keys=True)
            if key not in self._seen:
                self._seen.add(key)
                self.charts.append(chart)
                annotations.append(streaming.chart(chart))
            return ""

        content = CHART_SPAN.sub(_replace, text)
        if content:
            out.append(TextDelta(text=content))
        out.extend(annotations)
        return out

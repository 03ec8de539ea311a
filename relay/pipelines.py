from __future__ import annotations

import re
import shlex
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ConfigurationError, EmptyLayoutError
from .layout import Rect, ResolvedLayout
from .models import InputSource, bitrate_kbps

_CREDENTIALS_RE = re.compile(r"([a-zA-Z][a-zA-Z0-9+.-]*://)([^/@\s:]+):([^/@\s]+)@")
_SLUG_RE = re.compile(r"[^A-Za-z0-9_-]+")

BACKGROUND = "black"


@dataclass(frozen=True)
class DecodeStage:
    index: int
    source_id: int
    url: str
    label: str
    kind: str = "decode"


@dataclass(frozen=True)
class ScaleStage:
    input_label: str
    width: int
    height: int
    label: str
    kind: str = "scale"


@dataclass(frozen=True)
class CompositeInput:
    label: str
    slot: int
    rect: Rect


@dataclass(frozen=True)
class CompositeStage:
    width: int
    height: int
    framerate: int
    inputs: Tuple[CompositeInput, ...]
    empty_slots: Tuple[int, ...]
    background: str = BACKGROUND
    label: str = "out"
    kind: str = "composite"


@dataclass(frozen=True)
class EncodeStage:
    input_label: str
    width: int
    height: int
    framerate: int
    bitrate: str
    bitrate_kbps: int
    publish_url: Optional[str] = None
    codec: str = "h264"
    kind: str = "encode"


@dataclass(frozen=True)
class PipelineDescription:
    """Engine-agnostic stage list: decode/scale per source, one composite, one encode."""

    decodes: Tuple[DecodeStage, ...]
    scales: Tuple[ScaleStage, ...]
    composite: CompositeStage
    encode: EncodeStage

    @property
    def stages(self) -> list:
        out: list = []
        for d, s in zip(self.decodes, self.scales):
            out.extend((d, s))
        out.extend((self.composite, self.encode))
        return out

    def with_publish_url(self, url: str) -> "PipelineDescription":
        return replace(self, encode=replace(self.encode, publish_url=url))

    def to_dict(self, *, mask: bool = True) -> dict:
        stages = [asdict(s) for s in self.stages]
        if mask:
            for st in stages:
                for key in ("url", "publish_url"):
                    if st.get(key):
                        st[key] = mask_credentials(st[key])
        return {"stages": stages}


@dataclass(frozen=True)
class PipelineSpec:
    argv: List[str]
    pretty: str


def mask_credentials(text: str) -> str:
    return _CREDENTIALS_RE.sub(r"\1\2:***@", text)


def publish_path(name: str) -> str:
    return _SLUG_RE.sub("-", name).strip("-") or "relay"


def build_pipeline(
    layout: ResolvedLayout[InputSource],
    *,
    framerate: int,
    bitrate: str,
    publish_url: Optional[str] = None,
) -> PipelineDescription:
    if not layout.placements:
        raise EmptyLayoutError("no slots are mapped to a source", phase="resolve")

    decodes = []
    scales = []
    inputs = []
    for idx, p in enumerate(layout.placements):
        decodes.append(DecodeStage(index=idx, source_id=p.source.id, url=p.source.address, label=f"in{idx}"))
        scales.append(ScaleStage(input_label=f"in{idx}", width=p.rect.w, height=p.rect.h, label=f"v{idx}"))
        inputs.append(CompositeInput(label=f"v{idx}", slot=p.slot, rect=p.rect))

    composite = CompositeStage(
        width=layout.width,
        height=layout.height,
        framerate=framerate,
        inputs=tuple(inputs),
        empty_slots=layout.empty_slots,
    )
    encode = EncodeStage(
        input_label=composite.label,
        width=layout.width,
        height=layout.height,
        framerate=framerate,
        bitrate=bitrate,
        bitrate_kbps=bitrate_kbps(bitrate),
        publish_url=publish_url,
    )
    return PipelineDescription(decodes=tuple(decodes), scales=tuple(scales), composite=composite, encode=encode)


def _scheme(url: str) -> str:
    return urlsplit(url).scheme.lower()


def _require_publish_url(desc: PipelineDescription) -> str:
    if not desc.encode.publish_url:
        raise ConfigurationError("pipeline has no publish endpoint bound", phase="launch")
    return desc.encode.publish_url


# ---------------------------------------------------------------------------
# ffmpeg
# ---------------------------------------------------------------------------

_FFMPEG_MUXERS = {"rtsp": "rtsp", "srt": "mpegts", "udp": "mpegts", "rtmp": "flv"}


def _ffmpeg_filter_graph(desc: PipelineDescription) -> str:
    parts = []
    for d, s in zip(desc.decodes, desc.scales):
        parts.append(f"[{d.index}:v]scale={s.width}:{s.height},setsar=1[{s.label}]")

    c = desc.composite
    parts.append(f"color=c={c.background}:s={c.width}x{c.height}:r={c.framerate}[base]")
    prev = "base"
    for i, inp in enumerate(c.inputs):
        out = c.label if i == len(c.inputs) - 1 else f"tmp{i}"
        parts.append(f"[{prev}][{inp.label}]overlay=x={inp.rect.x}:y={inp.rect.y}:shortest=0[{out}]")
        prev = out
    return ";".join(parts)


def render_ffmpeg(desc: PipelineDescription, executable: str = "ffmpeg") -> PipelineSpec:
    url = _require_publish_url(desc)
    argv = [executable, "-hide_banner", "-nostdin", "-loglevel", "warning"]
    for d in desc.decodes:
        if _scheme(d.url) == "rtsp":
            argv += ["-rtsp_transport", "tcp"]
        argv += ["-i", d.url]

    e = desc.encode
    argv += [
        "-filter_complex", _ffmpeg_filter_graph(desc),
        "-map", f"[{e.input_label}]",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-pix_fmt", "yuv420p",
        "-b:v", e.bitrate,
        "-r", str(e.framerate),
        "-g", str(e.framerate * 2),
        "-s", f"{e.width}x{e.height}",
    ]
    scheme = _scheme(url)
    argv += ["-f", _FFMPEG_MUXERS.get(scheme, "mpegts")]
    if scheme == "rtsp":
        argv += ["-rtsp_transport", "tcp"]
    argv.append(url)
    return PipelineSpec(argv=argv, pretty=mask_credentials(shlex.join(argv)))


# ---------------------------------------------------------------------------
# GStreamer (gst-launch-1.0)
# ---------------------------------------------------------------------------

def _gst_src_element(url: str) -> str:
    scheme = _scheme(url)
    if scheme == "rtsp":
        return f"rtspsrc location={url} latency=200 protocols=tcp ! decodebin"
    if scheme == "srt":
        return f"srtsrc uri={url} ! decodebin"
    return f"uridecodebin uri={url}"


def _gst_sink_element(url: str) -> str:
    scheme = _scheme(url)
    if scheme == "rtsp":
        return f"h264parse ! rtspclientsink location={url} protocols=tcp"
    if scheme == "srt":
        return f"mpegtsmux ! srtsink uri={url}"
    raise ConfigurationError(f"gstreamer engine cannot publish to {scheme}:// endpoints", phase="launch")


def render_gstreamer(desc: PipelineDescription, executable: str = "gst-launch-1.0") -> PipelineSpec:
    url = _require_publish_url(desc)
    mixer = "mix"
    c = desc.composite
    e = desc.encode

    branches = []
    for d, s in zip(desc.decodes, desc.scales):
        branches.append(
            f"{_gst_src_element(d.url)} ! videoconvert ! videoscale "
            f"! video/x-raw,width={s.width},height={s.height} ! queue ! {mixer}.sink_{d.index}"
        )
    mixer_pads = [
        f"sink_{i}::xpos={inp.rect.x} sink_{i}::ypos={inp.rect.y}" for i, inp in enumerate(c.inputs)
    ]
    cmd = (
        f"{' '.join(branches)} "
        f"compositor name={mixer} background={c.background} {' '.join(mixer_pads)} "
        f"! video/x-raw,width={c.width},height={c.height} ! videorate "
        f"! video/x-raw,framerate={e.framerate}/1 ! videoconvert "
        f"! x264enc bitrate={e.bitrate_kbps} tune=zerolatency speed-preset=ultrafast key-int-max={e.framerate * 2} "
        f"! {_gst_sink_element(url)}"
    )
    argv = [executable, "-e"] + cmd.split()
    return PipelineSpec(argv=argv, pretty=mask_credentials(f"{executable} -e {cmd}"))


Renderer = Callable[[PipelineDescription, str], PipelineSpec]

RENDERERS: Dict[str, Renderer] = {
    "ffmpeg": render_ffmpeg,
    "gstreamer": render_gstreamer,
}


def get_renderer(engine: str) -> Renderer:
    try:
        return RENDERERS[engine]
    except KeyError:
        raise ConfigurationError(f"unknown transcoding engine {engine!r}") from None

"""Stand-in for the ffprobe / ffmpeg executables."""

import json
from dataclasses import dataclass, field
from pathlib import Path

from gopro_gps_batch.processing.commands import CommandResult

VIDEO_STREAM = {"index": 0, "codec_name": "h264", "codec_tag_string": "avc1",
                "codec_tag": "0x31637661", "tags": {"handler_name": "\tGoPro AVC"}}
AUDIO_STREAM = {"index": 1, "codec_name": "aac", "codec_tag_string": "mp4a",
                "codec_tag": "0x6134706d", "tags": {"handler_name": "\tGoPro AAC"}}
TMCD_STREAM = {"index": 2, "codec_tag_string": "tmcd", "codec_tag": "0x64636d74",
               "tags": {"handler_name": "\tGoPro TCD"}}
GPMD_STREAM = {"index": 3, "codec_name": "bin_data", "codec_tag_string": "gpmd",
               "codec_tag": "0x646d7067", "tags": {"handler_name": "\tGoPro MET"}}


@dataclass
class FakeMedia:
    streams: list[dict] | None = None
    """ffprobe stream entries; None makes ffprobe fail."""

    isolated: bytes | None = None
    """Bytes ffmpeg writes for the remuxed track; None makes ffmpeg fail."""

    probe_stdout: str | None = None


@dataclass
class FakeTools:
    media: dict[str, FakeMedia] = field(default_factory=dict)
    calls: list[list[str]] = field(default_factory=list)
    remux_outputs: list[Path] = field(default_factory=list)

    def add(self, name: str, **kwargs) -> FakeMedia:
        self.media[name] = FakeMedia(**kwargs)
        return self.media[name]

    def tool_calls(self, tool: str) -> list[list[str]]:
        return [c for c in self.calls if Path(c[0]).name == tool]

    def __call__(self, args):
        args = [str(a) for a in args]
        self.calls.append(args)
        tool = Path(args[0]).name
        if tool == "ffprobe":
            return self._probe(args)
        if tool == "ffmpeg":
            return self._remux(args)
        return CommandResult(returncode=127, stderr=f"{tool}: not found")

    def _probe(self, args):
        media = self.media.get(Path(args[-1]).name)
        if media is None or (media.streams is None and media.probe_stdout is None):
            return CommandResult(returncode=1, stderr="Invalid data found when processing input")
        if media.probe_stdout is not None:
            return CommandResult(returncode=0, stdout=media.probe_stdout)
        return CommandResult(returncode=0, stdout=json.dumps({"streams": media.streams}))

    def _remux(self, args):
        source = Path(args[args.index("-i") + 1])
        out_path = Path(args[-1])
        self.remux_outputs.append(out_path)
        media = self.media.get(source.name)
        if media is None or media.isolated is None:
            # ffmpeg leaves a partial file behind on failure
            out_path.write_bytes(b"partial")
            return CommandResult(returncode=1, stderr="Could not write header")
        out_path.write_bytes(media.isolated)
        return CommandResult(returncode=0)

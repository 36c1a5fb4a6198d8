"""
Defines download requests and the yt-dlp arguments each request type needs.
"""

from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import AUDIO_FORMATS, validate_quality
from .constants import DEFAULT_OUTPUT_TEMPLATE, PLAYLIST_OUTPUT_TEMPLATE

# Windows Media Player cannot play Opus audio inside mp4, so merged files use AAC.
MERGE_ARGS = ['--merge-output-format', 'mp4', '--postprocessor-args', 'merger+ffmpeg:-c:a aac']


class DownloadType(str, Enum):
    VIDEO = 'video'
    AUDIO = 'audio'
    PLAYLIST = 'playlist'
    THUMBNAIL = 'thumbnail'


class DownloadRequest(BaseModel):
    """
    One download request, as received from the CLI or `POST /api/download`.

    `quality` applies to video and playlist downloads; a playlist with quality
    'audio' downloads every entry as mp3.
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    url: str = Field(min_length=1)
    type: DownloadType = DownloadType.VIDEO
    quality: str = 'max'
    audio_format: str = Field(default='mp3', alias='audioFormat')

    @field_validator('url')
    @classmethod
    def strip_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("URL must not be empty.")
        return value

    @field_validator('quality', mode='before')
    @classmethod
    def validate_request_quality(cls, value: Optional[str]) -> str:
        if value is None or value == '':
            return 'max'
        if str(value).strip().lower() == 'audio':
            return 'audio'
        return validate_quality(str(value))

    @field_validator('audio_format', mode='before')
    @classmethod
    def validate_request_audio_format(cls, value: Optional[str]) -> str:
        if value is None or value == '':
            return 'mp3'
        lower_value = str(value).lower()
        if lower_value not in AUDIO_FORMATS:
            raise ValueError(f"'{value}' is not a supported audio format. Must be one of {AUDIO_FORMATS}.")
        return lower_value

    @property
    def is_playlist(self) -> bool:
        return self.type is DownloadType.PLAYLIST


def video_format_selector(quality: str) -> str:
    """Returns the yt-dlp `-f` selector for a quality setting."""
    if quality == 'max':
        return 'bestvideo+bestaudio/best'
    height = '1080' if quality == 'mid-max' else quality
    return f'bestvideo[height<={height}]+bestaudio/best[height<={height}]'


def audio_args(audio_format: str) -> List[str]:
    # yt-dlp calls the ogg container's codec 'vorbis'.
    fmt = 'vorbis' if audio_format == 'ogg' else audio_format
    return ['-x', '--audio-format', fmt, '--audio-quality', '0']


def build_download_args(request: DownloadRequest) -> Tuple[List[str], str]:
    """
    Builds the type-specific arguments for one request, without the URL.

    Returns:
        A tuple of (arguments, output template). The template is relative; the
        runner roots it under the download directory.
    """
    if request.type is DownloadType.PLAYLIST:
        template = PLAYLIST_OUTPUT_TEMPLATE
        if request.quality == 'audio':
            return audio_args('mp3'), template
        return ['-f', video_format_selector(request.quality), *MERGE_ARGS], template

    template = DEFAULT_OUTPUT_TEMPLATE
    if request.type is DownloadType.AUDIO:
        return audio_args(request.audio_format), template
    if request.type is DownloadType.THUMBNAIL:
        return ['--write-thumbnail', '--skip-download'], template
    quality = 'max' if request.quality == 'audio' else request.quality
    return ['-f', video_format_selector(quality), *MERGE_ARGS], template

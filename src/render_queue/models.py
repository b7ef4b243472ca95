"""Pydantic models for render job payloads."""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class VideoInfo(BaseModel):
    """Source video geometry and timing."""

    model_config = ConfigDict(populate_by_name=True)

    width: int = Field(default=0, ge=0, strict=True, description="Output width in pixels (0 = composition default)")
    height: int = Field(default=0, ge=0, strict=True, description="Output height in pixels (0 = composition default)")
    duration_in_frames: int = Field(
        default=0, ge=0, strict=True, alias="durationInFrames", description="Length of the render in frames"
    )
    fps: float = Field(default=30, gt=0, strict=True, description="Frames per second")


class RenderParameters(BaseModel):
    """Input props handed to the render pipeline.

    The queue stores these as an opaque JSON payload; only the render adapter
    and the billing calculation look inside. Unknown keys are preserved so the
    composition can evolve without a queue change.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    style: str = Field(default="basic", strict=True, description="Caption style preset name")
    caption_padding: float = Field(
        default=540, strict=True, alias="captionPadding", description="Vertical caption offset in pixels"
    )
    custom_style_configs: Dict[str, Any] = Field(
        default_factory=dict, alias="customStyleConfigs", description="Per-style overrides"
    )
    transcript: List[Any] = Field(default_factory=list, description="Subtitle groups")
    video_url: str = Field(default="", strict=True, alias="videoUrl", description="Source video URL or path")
    video_info: VideoInfo = Field(default_factory=VideoInfo, alias="videoInfo")

    @property
    def duration_s(self) -> float:
        """Render duration in seconds."""
        return self.video_info.duration_in_frames / self.video_info.fps

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the composition expects."""
        return self.model_dump(by_alias=True)

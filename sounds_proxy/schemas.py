from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Synopses(BaseModel):
    short: Optional[str] = None
    medium: Optional[str] = None
    long: Optional[str] = None


class Titles(BaseModel):
    primary: str
    secondary: Optional[str] = None


class Duration(BaseModel):
    value: int


class Release(BaseModel):
    date: str


class QualityVariant(BaseModel):
    file_url: Optional[str] = None
    file_size: Optional[int] = None


class QualityVariants(BaseModel):
    low: Optional[QualityVariant] = None
    medium: Optional[QualityVariant] = None
    high: Optional[QualityVariant] = None


class Download(BaseModel):
    type: Optional[str] = None
    quality_variants: QualityVariants = Field(default_factory=QualityVariants)


class Network(BaseModel):
    short_title: str


class ShowInfo(BaseModel):
    id: str
    titles: Titles
    synopses: Synopses = Field(default_factory=Synopses)
    network: Network
    image_url: Optional[str] = None


class EpisodeInfo(BaseModel):
    id: str
    titles: Titles
    synopses: Synopses = Field(default_factory=Synopses)
    duration: Duration
    release: Release
    download: Optional[Download] = None
    image_url: Optional[str] = None


class ContainerModule(BaseModel):
    id: str
    data: Any = None


class ContainerResponse(BaseModel):
    """RMS container payload: a list of modules tagged by ``id``."""

    data: list[ContainerModule]

    def show(self) -> Optional[ShowInfo]:
        for module in self.data:
            if module.id == "container" and isinstance(module.data, dict):
                return ShowInfo.model_validate(module.data)
        return None

    def episodes(self) -> Optional[list[EpisodeInfo]]:
        for module in self.data:
            if module.id == "container_list" and isinstance(module.data, list):
                return [EpisodeInfo.model_validate(item) for item in module.data]
        return None


class MediaConnection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    protocol: str
    href: str
    transfer_format: Optional[str] = Field(None, alias="transferFormat")


class Media(BaseModel):
    kind: str
    type: Optional[str] = None
    bitrate: str = "0"
    encoding: Optional[str] = None
    connection: list[MediaConnection] = Field(default_factory=list)

    @property
    def bitrate_value(self) -> int:
        try:
            return int(self.bitrate)
        except ValueError:
            return 0


class MediaList(BaseModel):
    media: list[Media]

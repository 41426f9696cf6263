import logging
import re
from datetime import datetime
from email.utils import format_datetime
from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.const import AAC_CONTENT_TYPE, SOUNDS_SERIES_URL
from sounds_proxy.exceptions import UpstreamUnavailable
from sounds_proxy.schemas import ContainerResponse, EpisodeInfo, QualityVariant

logger = logging.getLogger(__name__)

ITUNES_NAMESPACE = "http://www.itunes.com/dtds/podcast-1.0.dtd"
IMAGE_SIZE = "400x400"
ESTIMATED_BYTES_PER_SECOND = 50000

_URL_VARIABLES = {"recipe": IMAGE_SIZE}
_URL_VARIABLE_PATTERN = re.compile(r"\{([^{}]+)\}")


def template_url(url: Optional[str]) -> Optional[str]:
    """
    Fill the placeholders of a platform image URL template.

    Returns None if the template uses a placeholder we have no value for.
    """
    if not url:
        return None
    missing = []

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in _URL_VARIABLES:
            missing.append(name)
            return ""
        return _URL_VARIABLES[name]

    result = _URL_VARIABLE_PATTERN.sub(substitute, url)
    if missing:
        logger.warning(f"Missing URL variables {missing} in {url}")
        return None
    return result


def parse_release_date(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable release date: {value}")
        return None


def format_duration(seconds: int) -> str:
    return f"{seconds // 3600}:{(seconds // 60) % 60:02d}:{seconds % 60:02d}"


def _best_variant(episode: EpisodeInfo) -> Optional[QualityVariant]:
    if episode.download is None:
        return None
    variants = episode.download.quality_variants
    return variants.high or variants.medium or variants.low


def _content_type_for(file_url: str) -> str:
    extension = file_url.rsplit(".", 1)[-1].lower()
    if extension in ("m4a", "mp4"):
        return "audio/mp4"
    return "audio/mpeg"


def episode_enclosure(base_url: str, episode: EpisodeInfo) -> tuple[str, int, str]:
    """Enclosure (url, length, type) of an episode: its public download, or the proxied stream."""
    variant = _best_variant(episode)
    if variant is not None and variant.file_url:
        size = variant.file_size if variant.file_size is not None else ESTIMATED_BYTES_PER_SECOND * episode.duration.value
        return variant.file_url, size, _content_type_for(variant.file_url)
    return (
        f"{base_url.rstrip('/')}/episode/{episode.id}",
        ESTIMATED_BYTES_PER_SECOND * episode.duration.value,
        AAC_CONTENT_TYPE,
    )


def _text(parent: Element, tag: str, text: Optional[str]) -> Optional[Element]:
    if text is None:
        return None
    element = SubElement(parent, tag)
    element.text = text
    return element


def build_podcast_feed(base_url: str, pid: str, container: ContainerResponse) -> bytes:
    """Render a show container as an RSS 2.0 podcast feed."""
    show = container.show()
    episodes = container.episodes()
    if show is None or episodes is None:
        raise UpstreamUnavailable(f"Unexpected data in the container of show {pid}")

    rss = Element("rss")
    rss.set("version", "2.0")
    rss.set("xmlns:itunes", ITUNES_NAMESPACE)
    channel = SubElement(rss, "channel")

    _text(channel, "title", show.titles.primary)
    _text(channel, "link", SOUNDS_SERIES_URL.format(pid=pid))
    _text(channel, "description", show.synopses.medium or show.synopses.short or show.synopses.long or "")

    author = show.network.short_title
    _text(channel, "itunes:author", author)
    _text(channel, "itunes:block", "Yes")
    _text(channel, "itunes:subtitle", show.synopses.short or show.synopses.medium or show.synopses.long)

    image_url = template_url(show.image_url)
    if image_url:
        image = SubElement(channel, "image")
        _text(image, "url", image_url)
        _text(image, "title", show.titles.primary)
        _text(image, "link", SOUNDS_SERIES_URL.format(pid=pid))
        _text(image, "width", "400")
        _text(image, "height", "400")
        SubElement(channel, "itunes:image").set("href", image_url)

    channel_pub_date = SubElement(channel, "pubDate")
    most_recent: Optional[datetime] = None

    for episode in episodes:
        item = SubElement(channel, "item")
        summary = episode.synopses.long or episode.synopses.medium or episode.synopses.short

        _text(item, "title", episode.titles.secondary)
        _text(item, "description", summary)

        url, length, content_type = episode_enclosure(base_url, episode)
        enclosure = SubElement(item, "enclosure")
        enclosure.set("url", url)
        enclosure.set("length", str(length))
        enclosure.set("type", content_type)

        guid = _text(item, "guid", episode.id)
        guid.set("isPermaLink", "false")

        pub_date = parse_release_date(episode.release.date)
        if pub_date is not None:
            _text(item, "pubDate", format_datetime(pub_date))
            if most_recent is None or pub_date > most_recent:
                most_recent = pub_date

        _text(item, "itunes:duration", format_duration(episode.duration.value))
        _text(item, "itunes:author", author)
        _text(item, "itunes:subtitle", episode.titles.secondary)
        _text(item, "itunes:summary", summary)
        episode_image = template_url(episode.image_url)
        if episode_image:
            SubElement(item, "itunes:image").set("href", episode_image)

    if most_recent is not None:
        channel_pub_date.text = format_datetime(most_recent)
    else:
        channel.remove(channel_pub_date)

    logger.debug(f"Built feed for {pid} with {len(episodes)} episodes")
    return tostring(rss, encoding="utf-8", xml_declaration=True)


async def get_podcast_feed(client: SoundsClient, base_url: str, pid: str) -> bytes:
    container = await client.get_container(pid)
    return build_podcast_feed(base_url, pid, container)

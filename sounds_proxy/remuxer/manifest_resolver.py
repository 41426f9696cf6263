import logging

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.exceptions import MalformedManifest, NotFound, UnsupportedCodec
from sounds_proxy.remuxer.hls_manifest import (
    Manifest,
    is_master_playlist,
    parse_master_playlist,
    parse_media_playlist,
    select_audio_variant,
)
from sounds_proxy.schemas import MediaList

logger = logging.getLogger(__name__)


def select_hls_url(episode_id: str, media_list: MediaList) -> str:
    """
    Choose the HLS playlist URL for an episode.

    Takes the audio media with the highest bitrate and, within it, prefers
    an https connection.
    """
    audio_media = [media for media in media_list.media if media.kind == "audio" and media.connection]
    if not audio_media:
        raise NotFound(f"No audio media available for {episode_id}")

    media = max(audio_media, key=lambda m: m.bitrate_value)
    connection = sorted(media.connection, key=lambda c: c.protocol == "https")[-1]
    if ".m3u8" not in connection.href:
        raise UnsupportedCodec(f"Unsupported media for {episode_id}: {connection.href}")

    logger.debug(f"Episode {episode_id}: {media.bitrate} kbps {media.encoding} via {connection.protocol}")
    return connection.href


async def resolve_manifest(client: SoundsClient, episode_id: str) -> Manifest:
    """
    Resolve an episode ID to its ordered list of segments.

    Args:
        client (SoundsClient): Client for the platform APIs.
        episode_id (str): The episode pid.

    Returns:
        Manifest: The media playlist's segments.

    Raises:
        NotFound: If the platform does not know the episode.
        UpstreamUnavailable: If the platform could not be reached.
        MalformedManifest: If a playlist cannot be parsed.
    """
    media_list = await client.get_media(episode_id)
    playlist_url = select_hls_url(episode_id, media_list)

    content, playlist_url = await client.get_text(playlist_url)
    if is_master_playlist(content):
        variant = select_audio_variant(parse_master_playlist(content, playlist_url))
        content, playlist_url = await client.get_text(variant.url)
        if is_master_playlist(content):
            raise MalformedManifest(f"Variant playlist {playlist_url} is itself a master playlist")

    manifest = parse_media_playlist(content, playlist_url)
    logger.info(
        f"Resolved {episode_id}: {len(manifest.segments)} segments, {manifest.total_duration:.0f}s from {playlist_url}"
    )
    return manifest

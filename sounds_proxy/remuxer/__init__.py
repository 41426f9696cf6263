"""
HLS to ADTS remuxer.

Pure Python pipeline turning an episode's HLS rendition into a plain ADTS
AAC stream:

- manifest_resolver: Media selector lookup and master/media playlist resolution
- hls_manifest: M3U8 parsing into ordered segment references
- segment_source: Ordered segment fetching with bounded prefetch
- ts_demuxer: Incremental MPEG-TS demuxer extracting ADTS frames
- codec_utils: ADTS headers and LATM/LOAS unwrapping
- pipeline: The whole chain for one episode
"""

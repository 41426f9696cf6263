BBC_USER_AGENT = "BBCSounds/2.6.0.14059 (iPhone13,3; iOS 15.3.1) MediaSelectorClient/7.0.4 BBCHTTPClient/9.0.0"

MEDIA_SELECTOR_URL = (
    "https://open.live.bbc.co.uk/mediaselector/6/select/version/2.0/format/json"
    "/mediaset/mobile-phone-main/vpid/{pid}/transferformat/hls/"
)
PUBLIC_MEDIA_URL = (
    "https://open.live.bbc.co.uk/mediaselector/6/redir/version/2.0"
    "/mediaset/audio-nondrm-download/proto/https/vpid/{pid}.mp3"
)
RMS_CONTAINER_URL = "https://rms.api.bbc.co.uk/v2/experience/inline/container/{urn}"
SERIES_URN = "urn:bbc:radio:series:{pid}"
SOUNDS_SERIES_URL = "https://www.bbc.co.uk/sounds/series/{pid}"

AAC_CONTENT_TYPE = "audio/aac"
RSS_CONTENT_TYPE = "application/rss+xml"
EPISODE_CACHE_CONTROL = "public, max-age=604800"
FEED_CACHE_CONTROL = "public, max-age=900"

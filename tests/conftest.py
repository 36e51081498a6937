import json
import os
import sys

import httpx
import pytest

# Add src to path so tests run without installing the package
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import Settings  # noqa: E402
from resilient_client import ResilientClient  # noqa: E402

SAMPLE_MANIFEST = """#EXTM3U
#EXT-X-TWITCH-INFO:NODE="video-edge-1",MANIFEST-NODE-TYPE="weaver_cluster",USER-IP="8.8.8.8",SERVING-ID="abc",CLUSTER="ams02",USER-COUNTRY="RU",MANIFEST-CLUSTER="ams02"
#EXT-X-MEDIA:TYPE=VIDEO,GROUP-ID="chunked",NAME="1080p60 (source)",AUTOSELECT=YES,DEFAULT=YES
#EXT-X-STREAM-INF:BANDWIDTH=8000000,RESOLUTION=1920x1080,CODECS="avc1.64002A,mp4a.40.2",VIDEO="chunked",FRAME-RATE=60.000
https://video-weaver.ams02.hls.ttvnw.net/v1/playlist/abc.m3u8
"""


class FakeUpstream:
    """Synthetic platform: GraphQL token/discovery endpoint plus usher manifests"""

    def __init__(self):
        self.requests = []
        self.token = {"value": '{"channel":"test"}', "signature": "deadbeef"}
        self.featured = [
            {"stream": {"type": "live", "broadcaster": {"login": "somechannel"}}},
        ]
        self.manifest = SAMPLE_MANIFEST
        self.usher_status = 200
        self.gql_status = 200

    @property
    def gql_requests(self):
        return [r for r in self.requests if r.url.host == "gql.twitch.tv"]

    @property
    def usher_requests(self):
        return [r for r in self.requests if r.url.host == "usher.ttvnw.net"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "gql.twitch.tv":
            if self.gql_status != 200:
                return httpx.Response(self.gql_status, json={"error": "nope"})
            body = json.loads(request.content)
            if body["operationName"] == "FeaturedContentCarouselStreams":
                return httpx.Response(200, json={"data": {"featuredStreams": self.featured}})
            field = ("streamPlaybackAccessToken" if body["variables"]["isLive"]
                     else "videoPlaybackAccessToken")
            return httpx.Response(200, json={"data": {field: self.token}})
        if request.url.host == "usher.ttvnw.net":
            if self.usher_status != 200:
                return httpx.Response(self.usher_status, text="error")
            return httpx.Response(200, text=self.manifest)
        return httpx.Response(404)

    def client(self) -> ResilientClient:
        return ResilientClient(transport=httpx.MockTransport(self.handler),
                               min_delay=0, max_delay=0, max_duration=0.05)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def settings():
    return Settings(USER_AGENT=None, PROXY=None, REDACT_IP=False,
                    DEEP_STATUS_SECRET=None, ALTERNATE_PATHS=False)

import os
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import coach_stream.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep tests independent of a developer's shell
for _name in list(os.environ):
    if _name.startswith("COACH_STREAM_"):
        os.environ.pop(_name)

from coach_stream.config import StreamConfig  # noqa: E402

from fakes import SleepRecorder  # noqa: E402


@pytest.fixture
def config() -> StreamConfig:
    return StreamConfig(
        endpoint_url="http://backend.test/functions/v1/coach",
        bearer_token="token-abc",
        connect_timeout=1.0,
        context_timeout=0.2,
        streaming_timeout=0.2,
        settle_delay=0.01,
    )


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()

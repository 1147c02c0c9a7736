import asyncio
import io
import json
import os
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

import story
from scripts import play_session


class _SceneClient:
    def __init__(self, scenes):
        self._scenes = list(scenes)
        self.prompts = []

    async def generate(self, system_instruction, user_prompt, config):
        self.prompts.append(user_prompt)
        return story.ModelText(json.dumps(self._scenes.pop(0)))


def _scene(index: int, *, ending: bool = False) -> dict:
    return {
        "sceneId": f"scene_{index:03d}",
        "text": f"Scene {index}.",
        "choices": [{"id": "A", "label": "Go"}],
        "stats": {"hp": 7 - index, "luck": 3, "sanity": 5},
        "flags": {f"seen_{index}": True},
        "mood": "neutral",
        "beatTag": f"beat_{index}",
        "isEnding": ending,
    }


def test_pick_for_turn_repeats_last_pick() -> None:
    assert play_session.pick_for_turn(0, ["B", "C"]) is None
    assert play_session.pick_for_turn(1, ["B", "C"]) == "B"
    assert play_session.pick_for_turn(2, ["B", "C"]) == "C"
    assert play_session.pick_for_turn(5, ["B", "C"]) == "C"
    assert play_session.pick_for_turn(3, []) == "A"


def test_advance_state_keeps_last_three_beats() -> None:
    state = {"last3Beats": ["a", "b", "c"]}
    scene = story.normalize_scene(_scene(4), None).to_payload()

    advanced = play_session.advance_state(state, scene)

    assert advanced["at"] == "scene_004"
    assert advanced["last3Beats"] == ["b", "c", "beat_4"]
    assert advanced["stats"] == {"hp": 3, "luck": 3, "sanity": 5}
    assert advanced["pending"] is scene


def test_play_session_feeds_scenes_back_and_stops_at_ending() -> None:
    client = _SceneClient([_scene(1), _scene(2, ending=True), _scene(3)])

    transcript = asyncio.run(play_session.play_session(client, turns=3, picks=["C"], language="en"))

    assert [entry["scene"]["sceneId"] for entry in transcript] == ["scene_001", "scene_002"]
    assert [entry["picked"] for entry in transcript] == [None, "C"]
    assert len(client.prompts) == 2
    assert '"last3Beats": ["beat_1"]' in client.prompts[1]
    assert '"picked": "C"' in client.prompts[1]


def test_main_without_api_key_exits_with_error() -> None:
    stderr = io.StringIO()
    with mock.patch.dict(os.environ, {"GEMINI_API_KEY": ""}), redirect_stderr(stderr):
        code = play_session.main(["--turns", "1"])

    assert code == 2
    assert "Missing GEMINI_API_KEY" in stderr.getvalue()


def test_main_prints_transcript_json() -> None:
    client = _SceneClient([_scene(1)])
    stdout = io.StringIO()
    with (
        mock.patch.dict(os.environ, {"GEMINI_API_KEY": "key"}),
        mock.patch("story.get_generation_client", return_value=client) as factory,
        redirect_stdout(stdout),
    ):
        code = play_session.main(["--turns", "1", "--backend", "rest"])

    assert code == 0
    factory.assert_called_once_with("key", backend="rest")
    transcript = json.loads(stdout.getvalue())
    assert transcript[0]["scene"]["beatTag"] == "beat_1"

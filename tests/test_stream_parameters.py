from stream_parameters import ChunkPolicy, StreamConfig, TranscriptionConfig, load_openai_api_key


def test_defaults_match_segmentation_policy():
    cfg = StreamConfig()
    assert (cfg.chunk.min_chunk_ms, cfg.chunk.max_gap_ms, cfg.chunk.max_words) == (800, 1500, 40)
    assert (cfg.hint.window_ms, cfg.hint.buffer_entries) == (2500, 15)
    assert cfg.frame_samples == 160


def test_env_overrides_and_bad_values_fall_back(monkeypatch):
    monkeypatch.setenv("QS_CHUNK_MIN_MS", "1000")
    monkeypatch.setenv("QS_CHUNK_MAX_WORDS", "not-a-number")
    monkeypatch.setenv("QS_MAX_IN_FLIGHT", "0")
    monkeypatch.setenv("QS_QUESTION_DETECTION", "off")
    monkeypatch.setenv("STT_TEMPERATURE", "0.5")
    cfg = StreamConfig.from_env()
    assert cfg.chunk == ChunkPolicy(min_chunk_ms=1000, max_gap_ms=1500, max_words=40)
    assert cfg.max_in_flight == 1
    assert cfg.question_detection_enabled is False
    assert cfg.transcription.temperature == 0.5


def test_transcription_defaults(monkeypatch):
    for name in ("STT_MODEL", "STT_LANGUAGE", "STT_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    cfg = TranscriptionConfig.from_env()
    assert cfg.model == "whisper-1"
    assert cfg.endpoint.endswith("/v1/audio/transcriptions")
    assert cfg.silence_rms == 0.01


def test_api_key_from_env_or_file(monkeypatch, tmp_path):
    monkeypatch.setenv("OPENAI_API_KEY", "  sk-env  ")
    assert load_openai_api_key() == "sk-env"
    monkeypatch.delenv("OPENAI_API_KEY")
    key_file = tmp_path / "key.txt"
    key_file.write_text("sk-file\n", encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(key_file))
    assert load_openai_api_key() == "sk-file"
    monkeypatch.setenv("OPENAI_API_KEY_FILE", str(tmp_path / "absent.txt"))
    assert load_openai_api_key() is None

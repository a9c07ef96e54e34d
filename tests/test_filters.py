from copilotgw.config import CompletionConfig
from copilotgw.filters import ArtifactFilter, FilterFactory, PassthroughFilter


def run(chunk_filter, texts):
    return [text for text in (chunk_filter.apply(t) for t in texts) if text is not None]


def test_fence_suppressed_and_following_newline_stripped_once():
    assert run(ArtifactFilter(["```", "python"]), ["```", "\ndef foo():", " pass"]) == ["def foo():", " pass"]


def test_newline_stripped_only_once():
    assert run(ArtifactFilter(["```"]), ["```", "\n\nx", "\ny"]) == ["\nx", "\ny"]


def test_language_token_with_whitespace_suppressed():
    assert run(ArtifactFilter(["```", "python"]), ["```", "python\n", "\nreturn 1"]) == ["return 1"]


def test_non_artifacts_pass_through():
    assert run(ArtifactFilter(["```"]), ["x = '```'", "\n"]) == ["x = '```'", "\n"]


def test_factory_disabled_returns_passthrough():
    factory = FilterFactory.from_config(CompletionConfig(filter_artifacts=False))
    chunk_filter = factory.create("python")
    assert isinstance(chunk_filter, PassthroughFilter)
    assert run(chunk_filter, ["```"]) == ["```"]


def test_factory_matches_request_language_when_enabled():
    factory = FilterFactory(artifacts=["```"], match_request_language=True)
    assert run(factory.create("typescript"), ["typescript", "\nlet x"]) == ["let x"]
    plain = FilterFactory(artifacts=["```"])
    assert run(plain.create("typescript"), ["typescript"]) == ["typescript"]


def test_factory_creates_independent_filters():
    factory = FilterFactory(artifacts=["```"])
    first = factory.create()
    second = factory.create()
    assert first.apply("```") is None
    assert second.apply("\nx") == "\nx"

from app.main import build_cors_options


def test_origins_are_normalized_and_deduplicated():
    options = build_cors_options(
        ["https://lms.example.com/", "lms.example.com", " "],
        [],
        "preview.vercel.app",
    )
    assert options["allow_origins"] == ["https://lms.example.com", "https://preview.vercel.app"]
    assert "allow_origin_regex" not in options


def test_invalid_regexes_are_skipped():
    options = build_cors_options([], [r"https://.*\.example\.com", "([", ""])
    assert options["allow_origin_regex"] == r"(?:https://.*\.example\.com)"

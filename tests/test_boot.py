"""Tests for goldimage.boot and goldimage.keys modules."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from goldimage.boot import BootInjector, parse_boot_command
from goldimage.cancel import CancelToken
from goldimage.exceptions import BuildCancelled, ConfigurationError
from goldimage.keys import KEY_LEFTSHIFT, SPECIAL_KEYS, char_to_keypress, text_to_keypresses
from goldimage.models import BootSequence, BootStep, GuestInstance


class TestKeys:
    def test_lowercase(self):
        assert char_to_keypress("a") == (30,)

    def test_uppercase_uses_shift(self):
        assert char_to_keypress("A") == (KEY_LEFTSHIFT, 30)

    def test_symbol_uses_shift(self):
        assert char_to_keypress(":") == (KEY_LEFTSHIFT, 39)

    def test_untypeable_character(self):
        with pytest.raises(ConfigurationError, match="cannot be typed"):
            char_to_keypress("é")

    def test_special_keys(self):
        assert text_to_keypresses("<tab><ENTER><f10>") == [
            (SPECIAL_KEYS["tab"],),
            (SPECIAL_KEYS["enter"],),
            (SPECIAL_KEYS["f10"],),
        ]

    def test_unknown_token_typed_literally(self):
        presses = text_to_keypresses("<x>")
        assert presses == [char_to_keypress("<"), char_to_keypress("x"), char_to_keypress(">")]

    def test_wait_inside_step_rejected(self):
        with pytest.raises(ConfigurationError, match="Wait token"):
            text_to_keypresses("a<wait5>b")


class TestParseBootCommand:
    def test_splits_on_wait_tokens(self):
        sequence = parse_boot_command(["<up><wait>e<wait2>text<enter>"])
        assert sequence.steps == (
            BootStep("<up>", 1.0),
            BootStep("e", 2.0),
            BootStep("text<enter>", 0.0),
        )

    def test_wait_units(self):
        sequence = parse_boot_command(["a<wait10s>b<wait2m>c<wait500ms>"])
        assert [s.wait for s in sequence] == [10.0, 120.0, 0.5]

    def test_consecutive_waits_accumulate(self):
        sequence = parse_boot_command(["a<wait5><wait5>b"])
        assert sequence.steps == (BootStep("a", 10.0), BootStep("b", 0.0))

    def test_leading_wait_becomes_empty_step(self):
        sequence = parse_boot_command(["<wait3><esc>"])
        assert sequence.steps == (BootStep("", 3.0), BootStep("<esc>", 0.0))

    def test_mapping_entries(self):
        sequence = parse_boot_command([{"keys": "<tab>", "wait": "1s"}, "linux<enter>"])
        assert sequence.steps == (BootStep("<tab>", 1.0), BootStep("linux<enter>", 0.0))

    def test_placeholders_are_kept(self):
        sequence = parse_boot_command(["inst.ks=http://{{ .HTTPIP }}:{{ .HTTPPort }}/ks.cfg"])
        assert sequence.unresolved is True

    def test_unknown_mapping_key(self):
        with pytest.raises(ConfigurationError, match="Unknown boot command keys"):
            parse_boot_command([{"keys": "a", "delay": 1}])

    def test_invalid_entry_type(self):
        with pytest.raises(ConfigurationError, match="strings or mappings"):
            parse_boot_command([42])

    def test_untypeable_text_rejected_early(self):
        with pytest.raises(ConfigurationError):
            parse_boot_command(["ünicode"])

    def test_empty(self):
        assert len(parse_boot_command([])) == 0


@pytest.fixture
def guest():
    return GuestInstance(id="g1", name="goldimage-test-1234", console=object())


class TestBootInjector:
    def test_sends_every_keypress_in_order(self, guest):
        driver = MagicMock()
        injector = BootInjector(driver, CancelToken(), key_interval=0, log_fn=MagicMock())
        injector.inject(guest, BootSequence((BootStep("ab", 0.0), BootStep("<enter>", 0.0))))
        sent = [c.args[1] for c in driver.send_keys.call_args_list]
        assert sent == [(30,), (48,), (28,)]
        assert injector.injections == 1

    def test_refuses_second_injection(self, guest):
        injector = BootInjector(MagicMock(), CancelToken(), key_interval=0, log_fn=MagicMock())
        sequence = BootSequence((BootStep("a"),))
        injector.inject(guest, sequence)
        with pytest.raises(RuntimeError, match="already injected"):
            injector.inject(guest, sequence)

    def test_explicit_reinjection(self, guest):
        driver = MagicMock()
        injector = BootInjector(driver, CancelToken(), key_interval=0, log_fn=MagicMock())
        sequence = BootSequence((BootStep("a"),))
        injector.inject(guest, sequence)
        injector.inject(guest, sequence, reinject=True)
        assert injector.injections == 2
        assert driver.send_keys.call_count == 2

    def test_duration_counts_keys_and_waits(self):
        injector = BootInjector(MagicMock(), CancelToken(), key_interval=0.1, log_fn=MagicMock())
        sequence = BootSequence((BootStep("ab", 2.0), BootStep("<enter>", 0.5)))
        assert injector.duration(sequence) == pytest.approx(3 * 0.1 + 2.5)

    def test_unresolved_placeholders_rejected(self, guest):
        driver = MagicMock()
        injector = BootInjector(driver, CancelToken(), log_fn=MagicMock())
        with pytest.raises(ConfigurationError, match="placeholders"):
            injector.inject(guest, BootSequence((BootStep("{{ .HTTPIP }}"),)))
        driver.send_keys.assert_not_called()

    def test_cancellation_stops_typing(self, guest):
        token = CancelToken()
        token.cancel("SIGINT")
        driver = MagicMock()
        injector = BootInjector(driver, token, log_fn=MagicMock())
        with pytest.raises(BuildCancelled):
            injector.inject(guest, BootSequence((BootStep("abc"),)))
        driver.send_keys.assert_not_called()

    def test_keys_not_logged(self, guest):
        log_fn = MagicMock()
        injector = BootInjector(MagicMock(), CancelToken(), key_interval=0, log_fn=log_fn)
        injector.inject(guest, BootSequence((BootStep("hunter2<enter>"),)))
        assert all("hunter2" not in c.args[1] for c in log_fn.call_args_list)

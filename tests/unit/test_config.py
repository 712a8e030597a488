"""Tests for helper and disclosure settings."""
import pytest

from dshelper.client.disclosure import DisclosureSettings
from dshelper.config import DEFAULT_SETTINGS, HelperSettings


pytestmark = pytest.mark.unit


class TestSettings:
    def test_helper_defaults(self):
        assert DEFAULT_SETTINGS.na_sentinel == -99999
        assert DEFAULT_SETTINGS.max_name_length == 20
        assert HelperSettings(digits=3).digits == 3

    def test_disclosure_defaults(self):
        settings = DisclosureSettings()
        assert settings.nfilter_tab == 3
        assert settings.nfilter_subset == 3
        assert settings.to_dict()["nfilter_string_short"] == 20

    def test_disclosure_settings_frozen(self):
        settings = DisclosureSettings()
        with pytest.raises(AttributeError):
            settings.nfilter_tab = 1

    def test_default_id_var(self):
        assert DEFAULT_SETTINGS.default_id_var == "child_id"

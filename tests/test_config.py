"""Tests for library settings."""

import pytest
from gradplug import ConfigError, Settings, get_settings, set_settings, settings_override


class TestSettingsFromEnv:
    """Tests for environment overrides."""

    def test_defaults(self):
        """An empty environment yields the defaults."""
        settings = Settings.from_env({})

        assert settings == Settings()
        assert settings.gradcheck_eps == 1e-6
        assert settings.strict_gradients is False

    def test_overrides(self):
        """GRADPLUG_* variables override the matching fields."""
        settings = Settings.from_env({
            'GRADPLUG_GRADCHECK_EPS': '1e-4',
            'GRADPLUG_GRADCHECK_SEED': '7',
            'GRADPLUG_STRICT_GRADIENTS': 'yes',
            'UNRELATED': 'ignored',
        })

        assert settings.gradcheck_eps == 1e-4
        assert settings.gradcheck_seed == 7
        assert settings.strict_gradients is True

    @pytest.mark.parametrize('raw,expected', [
        ('1', True), ('TRUE', True), ('on', True),
        ('0', False), ('false', False), ('', False),
    ])
    def test_boolean_values(self, raw, expected):
        """Common boolean spellings are accepted."""
        settings = Settings.from_env({'GRADPLUG_STRICT_GRADIENTS': raw})
        assert settings.strict_gradients is expected

    @pytest.mark.parametrize('name,raw', [
        ('GRADPLUG_GRADCHECK_EPS', 'small'),
        ('GRADPLUG_GRADCHECK_SEED', '1.5'),
        ('GRADPLUG_STRICT_GRADIENTS', 'maybe'),
    ])
    def test_invalid_values(self, name, raw):
        """Unparseable values should raise."""
        with pytest.raises(ConfigError, match=name):
            Settings.from_env({name: raw})

    def test_validation(self):
        """Out-of-range values are rejected."""
        with pytest.raises(ConfigError, match='gradcheck_eps'):
            Settings.from_env({'GRADPLUG_GRADCHECK_EPS': '-1'})
        with pytest.raises(ConfigError, match='gradcheck_atol'):
            Settings(gradcheck_atol=-1e-3)


class TestActiveSettings:
    """Tests for reading and replacing the active settings."""

    def test_set_settings_returns_previous(self, restore_settings):
        """set_settings returns what was active before."""
        original = get_settings()
        previous = set_settings(gradcheck_atol=1e-3)

        assert previous is original
        assert get_settings().gradcheck_atol == 1e-3
        assert get_settings().gradcheck_eps == original.gradcheck_eps

    def test_unknown_field(self, restore_settings):
        """Unknown names should raise without changing anything."""
        original = get_settings()
        with pytest.raises(ConfigError):
            set_settings(no_such_field=1)

        assert get_settings() is original

    def test_invalid_value_keeps_previous(self, restore_settings):
        """A rejected value leaves the active settings in place."""
        original = get_settings()
        with pytest.raises(ConfigError):
            set_settings(gradcheck_eps=0)

        assert get_settings() is original

    def test_override_restores(self):
        """settings_override restores the previous settings on exit."""
        original = get_settings()
        with settings_override(strict_gradients=True) as active:
            assert active.strict_gradients is True
            assert get_settings() is active

        assert get_settings() is original

    def test_override_restores_on_error(self):
        """Settings are restored when the block raises."""
        original = get_settings()
        with pytest.raises(RuntimeError):
            with settings_override(gradcheck_seed=3):
                raise RuntimeError('boom')

        assert get_settings() is original

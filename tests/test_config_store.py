import pytest

from attendbot.config_store import (
    get_event_config,
    parse_mode,
    set_attendance_mode,
    set_game_percentage,
    set_movie_threshold,
)
from attendbot.errors import ValidationError
from attendbot.models import AttendanceMode, EventType

from conftest import GUILD


def test_defaults_without_row():
    config = get_event_config(GUILD)
    assert config.movie_threshold_minutes == 30
    assert config.game_qualification_percentage == 50
    assert config.mode_for(EventType.MOVIE) is AttendanceMode.CUMULATIVE


def test_setters_keep_other_columns():
    set_movie_threshold(GUILD, 45)
    set_game_percentage(GUILD, 70)
    set_attendance_mode(GUILD, EventType.GAME, "continuous")
    config = get_event_config(GUILD)
    assert config.movie_threshold_minutes == 45
    assert config.game_qualification_percentage == 70
    assert config.game_attendance_mode is AttendanceMode.CONTINUOUS
    assert config.movie_attendance_mode is AttendanceMode.CUMULATIVE


def test_out_of_range_values_are_rejected():
    with pytest.raises(ValidationError):
        set_movie_threshold(GUILD, 0)
    with pytest.raises(ValidationError):
        set_game_percentage(GUILD, 95)
    assert get_event_config(GUILD).movie_threshold_minutes == 30


def test_mode_aliases():
    assert parse_mode("Single") is AttendanceMode.CONTINUOUS
    assert parse_mode(" cumulative ") is AttendanceMode.CUMULATIVE
    with pytest.raises(ValidationError):
        parse_mode("average")

from urllib.parse import unquote

import pytest

from ringline.core.widget import WIDGET_CONFIG, build_join_url


def fragment_params(url):
    fragment = url.split('#', 1)[1]
    return dict(pair.split('=', 1) for pair in fragment.split('&'))


def test_join_url_layout():
    url = build_join_url('https://meet.example.com/', 'call_1_abcdefghi')

    assert url.startswith('https://meet.example.com/call_1_abcdefghi#')
    params = fragment_params(url)
    for key, value in WIDGET_CONFIG.items():
        assert params[key] == value
    assert 'userInfo.displayName' not in params


def test_display_name_is_quoted():
    url = build_join_url('https://meet.example.com', 'room', display_name='Ann & Bo')

    params = fragment_params(url)
    assert params['userInfo.displayName'] == 'Ann%20%26%20Bo'
    assert unquote(params['userInfo.displayName']) == 'Ann & Bo'


def test_mute_flags():
    params = fragment_params(build_join_url('https://m', 'room', audio_muted=True, video_muted=False))

    assert params['config.startWithAudioMuted'] == 'true'
    assert params['config.startWithVideoMuted'] == 'false'


def test_extra_params():
    params = fragment_params(build_join_url('https://m', 'room', extra={'config.subject': 'standup'}))

    assert params['config.subject'] == 'standup'


def test_empty_room_rejected():
    with pytest.raises(ValueError):
        build_join_url('https://m', '')

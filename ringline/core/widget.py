"""
Hosted conferencing widget join URL.

Only the URL is built here; the media path of a widget call belongs to the
hosted service.
"""

from typing import Dict, Optional
from urllib.parse import quote


# Configuration fragment appended to every room URL
WIDGET_CONFIG = {
    'config.startWithAudioMuted': 'false',
    'config.startWithVideoMuted': 'true',
    'config.disableDialIn': 'true',
    'config.prejoinConfig.enabled': 'false',
    'config.disableChat': 'true',
    'config.disableInviteFunctions': 'true',
}


def build_join_url(base_url: str, room: str, display_name: Optional[str] = None,
                   audio_muted: bool = False, video_muted: bool = True,
                   extra: Optional[Dict[str, str]] = None) -> str:
    """
    Build the widget URL for a room.

    Args:
        base_url: Conferencing server, e.g. 'https://meet.jit.si'
        room: Room identifier (see generate_room_id)
        display_name: Name shown to the other party
        audio_muted: Join with microphone muted
        video_muted: Join with camera off
        extra: Additional fragment parameters

    Returns:
        '<base>/<room>#config.startWithAudioMuted=false&...&userInfo.displayName=...'
    """
    if not room:
        raise ValueError("Room identifier must not be empty")

    params = dict(WIDGET_CONFIG)
    params['config.startWithAudioMuted'] = str(audio_muted).lower()
    params['config.startWithVideoMuted'] = str(video_muted).lower()
    if extra:
        params.update(extra)
    if display_name:
        params['userInfo.displayName'] = quote(display_name, safe='')

    fragment = '&'.join(f"{key}={value}" for key, value in params.items())
    return f"{base_url.rstrip('/')}/{quote(room, safe='')}#{fragment}"

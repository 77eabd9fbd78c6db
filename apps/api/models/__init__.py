"""Models package."""

from .checkin import Checkin
from .address_cache import AddressCache
from .user_follow import UserFollow
from .profile_cache import ProfileCache
from .processing_log import ProcessingLog

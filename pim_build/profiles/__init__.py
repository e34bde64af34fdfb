"""Profile resolution module.

This module handles:
- Loading profiles from profiles.d/*.yml in the global and project dirs
- Merging every named profile over the ``default`` profile
- Typed accessors for the build settings a profile may override
"""

from pim_build.profiles.resolver import DEFAULT_PROFILE, Profile, ProfileResolver

__all__ = ["DEFAULT_PROFILE", "Profile", "ProfileResolver"]

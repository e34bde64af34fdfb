"""Build orchestration module.

This module handles:
- Cache key computation
- Image registry
- Provisioning script resolution
- Installer kernel extraction
- The two-phase install/boot pipeline and its session state
- The build manager tying resolution, caching and building together
"""

# Lazy imports for submodules to avoid circular imports
# Access via pim_build.builds.cache_key, etc.

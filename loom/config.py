"""Global configuration for Loom.

Some components also have their own configurations, which see:

  - forest.config
"""

import pathlib

# Used for various things. E.g. the default chat data directory goes here.
userdata_dir = "~/.config/loom/"

# Convert to an absolute path, just once here.
userdata_dir = pathlib.Path(userdata_dir).expanduser().resolve()

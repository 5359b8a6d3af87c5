"""Configuration for the Loom chat forest (branching conversation store)."""

from .. import config as global_config

# Default data directory, used when the app does not specify one.
# One conversation forest per directory; only one process may have it open at a time.
forest_data_dir = global_config.userdata_dir / "forest"

# On-disk layout inside a data directory.
roots_dirname = "roots"
nodes_dirname = "nodes"
record_suffix = ".json"
lock_filename = ".lock"
journal_filename = "journal.json"

# Last-visited node pointer. Owned by the front end; the store itself never reads it.
current_node_filename = "current-node-id"

# The tag that marks a branch the user has not looked at yet.
unread_tag = "unread"

# Model call parameters for new conversations, unless the app specifies its own.
default_max_tokens = 1024
default_temperature = 1.0

# How many provider-specific extra parameters a conversation config may carry.
max_extra_parameters = 32

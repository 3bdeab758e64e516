HOST_NAME = "pipekit"

# Listing sentinel
ERROR_MODEL_ID = "error"

ERROR_PREFIX = "Error:"

# Context parameters a host may pass to pipe(); a plugin receives only the
# ones its signature declares.
CONTEXT_PARAMS = (
    "__user__",
    "__request__",
    "__event_emitter__",
    "__event_call__",
    "__task__",
    "__model__",
    "__metadata__",
    "__chat_id__",
    "__message_id__",
    "__files__",
)

# Docstring keys recognised in plugin frontmatter
FRONTMATTER_KEYS = (
    "title",
    "author",
    "author_url",
    "funding_url",
    "description",
    "version",
    "license",
    "requirements",
    "required_open_webui_version",
)

PLUGIN_MODULE_NAMESPACE = "pipekit._plugins"

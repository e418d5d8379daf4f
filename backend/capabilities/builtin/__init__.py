"""Built-in capability catalog."""

from capabilities.builtin.ai import AI_CAPABILITIES
from capabilities.builtin.http import HTTP_CAPABILITIES
from capabilities.builtin.social import SOCIAL_CAPABILITIES
from capabilities.builtin.storage import STORAGE_CAPABILITIES
from capabilities.builtin.utilities import UTILITY_CAPABILITIES

BUILTIN_CAPABILITIES = [
    *UTILITY_CAPABILITIES,
    *HTTP_CAPABILITIES,
    *AI_CAPABILITIES,
    *SOCIAL_CAPABILITIES,
    *STORAGE_CAPABILITIES,
]

# Paths renamed across catalog versions that are not tied to one entry's own aliases.
BUILTIN_PATH_ALIASES = {
    "utilities.array.pluckField": "utilities.array.pluck",
    "utilities.array.deduplicate": "utilities.array.unique",
    "utilities.string.uppercase": "utilities.string.toUpperCase",
    "utilities.string.lowercase": "utilities.string.toLowerCase",
    "ai.openai.generateTextWithOpenAI": "ai.openai.generateText",
}

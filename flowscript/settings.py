from pydantic import BaseModel
import os

class Settings(BaseModel):
    # Preprocessor: spaces per indentation level.
    indent_size: int = int(os.getenv("FLOWSCRIPT_INDENT_SIZE", "2"))

    # If true, a bare `><` without [axis] is a parse error instead of a lint finding.
    require_tension_axis: bool = os.getenv("FLOWSCRIPT_REQUIRE_TENSION_AXIS", "0") == "1"

    # Linter thresholds (warnings W002 / W003)
    max_nesting_depth: int = int(os.getenv("FLOWSCRIPT_MAX_NESTING_DEPTH", "5"))
    max_chain_length: int = int(os.getenv("FLOWSCRIPT_MAX_CHAIN_LENGTH", "10"))

    # Optional provenance author stamped on every entity.
    author: str | None = os.getenv("FLOWSCRIPT_AUTHOR")
    author_role: str = os.getenv("FLOWSCRIPT_AUTHOR_ROLE", "human")

    log_level: str = os.getenv("FLOWSCRIPT_LOG_LEVEL", "WARNING")

from .pipeline import ScanAgentResult, Stage, run_scan_agent
from .prompting import interpolate_prompt, sanitize_field
from .parsing import parse_llm_output
from .compat import resolve_model_config, classify_api_style
from .security import scrub_error_message

__all__ = [
    "ScanAgentResult",
    "Stage",
    "run_scan_agent",
    "interpolate_prompt",
    "sanitize_field",
    "parse_llm_output",
    "resolve_model_config",
    "classify_api_style",
    "scrub_error_message",
]

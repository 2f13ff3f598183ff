from functools import lru_cache
from pathlib import Path
import yaml


class PromptLoader:
    @staticmethod
    @lru_cache(maxsize=None)
    def load_prompt(relative_path: str, key: str = "SYSTEM_PROMPT") -> str:
        """
        Loads a prompt string from a YAML file stored next to this module.
        """
        file_path = Path(__file__).resolve().parent / relative_path

        if not file_path.exists():
            raise FileNotFoundError(f"Prompt file missing: {file_path}")

        with file_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        prompt_template = data.get(key)
        if not prompt_template:
            raise ValueError(f"key '{key}' missing in {file_path}")

        return prompt_template.strip()

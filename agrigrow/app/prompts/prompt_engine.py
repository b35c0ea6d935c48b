import json
from pathlib import Path
from typing import Dict, List, Optional
from loguru import logger

from agrigrow.app.db.schemas import UserContext
from agrigrow.app.prompts.seasonal_context import SeasonalContext, get_regional_context


class PromptEngine:
    def __init__(self, template_dir: str, default_version: str):
        self.template_dir = Path(template_dir)
        self.default_version = default_version
        self.prompts_cache: Dict[str, Dict] = {}
        self._load_all_prompts()

    def _load_all_prompts(self):
        if not self.template_dir.is_dir():
            logger.warning(
                f"Prompt template directory not found or not a directory: {self.template_dir}"
            )
            return
        for file_path in self.template_dir.glob("*.json"):
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    prompt_data = json.load(f)
                prompt_name_from_file = file_path.stem
                version = prompt_data.get("version", self.default_version)
                base_name = prompt_data.get(
                    "name", prompt_name_from_file.replace(f"_{version}", "")
                )

                key = (
                    f"{base_name}_{version}"
                    if "name" in prompt_data
                    else prompt_name_from_file
                )
                self.prompts_cache[key] = prompt_data
                logger.debug(f"Loaded prompt: {key} from {file_path.name}")
            except json.JSONDecodeError:
                logger.warning(f"Could not decode JSON from {file_path}", exc_info=True)
            except Exception as e:
                logger.warning(f"Error loading prompt {file_path}: {e}", exc_info=True)

    def get_prompt(
        self, name: str, version: Optional[str] = None, variables: Optional[Dict] = None
    ) -> Optional[str]:
        target_version = version or self.default_version
        prompt_key = f"{name}_{target_version}"

        prompt_template_data = self.prompts_cache.get(prompt_key)

        if not prompt_template_data:
            logger.warning(
                f"Prompt '{prompt_key}' not found in cache. Available: {list(self.prompts_cache.keys())}"
            )
            return None

        template_str = prompt_template_data.get("template")
        if not template_str:
            logger.warning(f"No 'template' field in prompt data for '{prompt_key}'.")
            return None

        if variables:
            try:
                return template_str.format(**variables)
            except KeyError as e:
                logger.warning(f"Missing variable {e} for prompt '{prompt_key}'.")
                return template_str
        return template_str

    def build_chat_system_prompt(
        self,
        seasonal: SeasonalContext,
        user: UserContext,
        crops_context: Optional[List[str]] = None,
    ) -> Optional[str]:
        return self.get_prompt(
            "chat_system",
            variables={
                "month": seasonal.month,
                "season": seasonal.season,
                "season_description": seasonal.season_description,
                "weather_pattern": seasonal.weather_pattern,
                "activities": ", ".join(seasonal.typical_activities[:3]),
                "challenges": ", ".join(seasonal.common_challenges[:3]),
                "farmer_context": _farmer_context(user, crops_context),
            },
        )

    def build_chat_greeting(self, seasonal: SeasonalContext, user: UserContext) -> Optional[str]:
        summary = ""
        if user.state:
            summary += f"**Your Region**: {user.state}\n"
        if user.crops:
            summary += f"**Your Crops**: {', '.join(user.crops)}\n"
        return self.get_prompt(
            "chat_greeting",
            variables={
                "season": seasonal.season,
                "season_description": seasonal.season_description,
                "farmer_summary": summary,
            },
        )


def _farmer_context(user: UserContext, crops_context: Optional[List[str]]) -> str:
    if not (user.name or user.state or user.crops):
        return ""

    lines = ["", "FARMER CONTEXT:"]
    if user.name:
        lines.append(f"- Name: {user.name}")
    if user.state:
        location = f"{user.district}, {user.state}" if user.district else user.state
        lines.append(f"- Location: {location}")
        lines.append(f"- Regional Info: {get_regional_context(user.state)}")

    # Profile crops first, then conversation crops, without duplicates
    crops = list(dict.fromkeys((user.crops or []) + (crops_context or [])))
    if crops:
        lines.append(f"- Crops of Interest: {', '.join(crops)}")
    if user.experience_level:
        lines.append(f"- Experience Level: {user.experience_level}")
    if user.role:
        lines.append(f"- Profile: {user.role}")
    return "\n".join(lines) + "\n"

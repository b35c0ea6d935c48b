import importlib
from typing import Any, Dict, List, Optional

from loguru import logger

from agrigrow.app.config import ModelConfig


class ModelService:
    def __init__(self, chat_config: Optional[ModelConfig]):
        logger.info("Initializing ModelService...")
        self.chat_config = chat_config
        self.chat_model: Optional[Any] = self._load_model(chat_config, "chat")

        if self.chat_model:
            logger.success("Chat model loaded successfully.")
        else:
            # _load_model already logs errors, this is a summary
            logger.error("Chat model FAILED to load or was not configured properly.")

    @property
    def model_name(self) -> Optional[str]:
        return self.chat_config.model_name if self.chat_config else None

    def is_available(self) -> bool:
        return self.chat_model is not None

    def _load_model(
        self, config: Optional[ModelConfig], model_name_for_log: str
    ) -> Optional[Any]:
        method_prefix = f"ModelService._load_model (for '{model_name_for_log}')"

        if not config:
            logger.info(f"{method_prefix}: Configuration not provided. Skipping load.")
            return None

        if not config.type or not config.class_name:
            logger.warning(
                f"{method_prefix}: Configuration is incomplete (type or class_name missing). "
                f"Config: {config.model_dump(exclude_none=True, exclude={'api_key'})}. Skipping load."
            )
            return None

        logger.debug(
            f"{method_prefix}: Attempting to load. Type: '{config.type}', Class: '{config.class_name}'"
        )

        module_name = f"agrigrow.app.models.{config.type}_models"
        try:
            logger.debug(f"{method_prefix}: Importing module '{module_name}'...")
            module = importlib.import_module(module_name)
            ModelClass = getattr(module, config.class_name)
            logger.debug(
                f"{method_prefix}: Class '{config.class_name}' retrieved from '{module_name}'."
            )

            model_params: Dict[str, Any] = {}

            if config.type == "api":
                if not config.endpoint:
                    logger.error(
                        f"{method_prefix}: API model requires an 'endpoint', but it's missing in config."
                    )
                    return None
                model_params["endpoint"] = config.endpoint
                model_params["model_name"] = config.model_name
                model_params["temperature"] = config.temperature
                model_params["max_output_tokens"] = config.max_output_tokens

                if config.api_key:
                    model_params["api_key"] = config.api_key
                else:
                    # Model's __init__ decides whether a key is mandatory
                    logger.info(
                        f"{method_prefix}: API key not found in config. Model will be initialized without it."
                    )

            logger.info(
                f"{method_prefix}: Initializing model class '{config.class_name}' with parameters: {list(model_params.keys())}"
            )
            model_instance = ModelClass(**model_params)
            logger.success(
                f"{method_prefix}: Model instance of '{config.class_name}' created successfully."
            )
            return model_instance

        except ImportError:
            logger.error(
                f"{method_prefix}: ImportError - Module '{module_name}' not found.",
                exc_info=True,
            )
        except AttributeError:
            logger.error(
                f"{method_prefix}: AttributeError - Class '{config.class_name}' not found in module '{module_name}'.",
                exc_info=True,
            )
        except ValueError as ve:
            # e.g. missing API key raised by the model's __init__
            logger.error(
                f"{method_prefix}: ValueError during model initialization ('{config.class_name}'): {ve}"
            )
        except TypeError as te:
            logger.error(
                f"{method_prefix}: TypeError during model initialization ('{config.class_name}'): {te}. Check constructor arguments.",
                exc_info=True,
            )

        return None

    async def generate_chat(
        self, history: List[Dict[str, Any]], message: str
    ) -> Dict[str, Any]:
        method_name = "ModelService.generate_chat"
        if not self.chat_model:
            logger.warning(f"{method_name}: Chat model not loaded. Cannot generate.")
            return {"error": "Chat model not available/loaded", "step": "model_missing"}

        try:
            logger.debug(
                f"{method_name}: Calling generate of {type(self.chat_model).__name__}"
            )
            result: Optional[Dict[str, Any]] = await self.chat_model.generate(history, message)
        except Exception as e:
            logger.error(
                f"{method_name}: Exception occurred. Type: {type(e).__name__}, Message: '{e}'",
                exc_info=True,
            )
            return {"error": f"Unhandled generation error: {type(e).__name__} - {e}"}

        if result is None:
            logger.error(f"{method_name}: Model's generate method returned None.")
            return {"error": "Model generation returned None."}

        if "error" in result:
            details_str = str(result.get("details"))
            if len(details_str) > 300:
                details_str = details_str[:300] + "..."
            logger.error(
                f"{method_name}: Model returned an error. "
                f"Error Msg: '{result['error']}', Step: {result.get('step')}, Details Snippet: {details_str}"
            )
            return {
                "error": result["error"],
                "details": result.get("details"),
                "step": result.get("step"),
            }

        logger.success(
            f"{method_name}: Received reply of {len(result.get('text') or '')} chars."
        )
        return result

    async def close(self):
        if self.chat_model:
            await self.chat_model.close()

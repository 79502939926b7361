import logging
from typing import Any

from gemini_image_mcp.acquisition import ImageAcquirer
from gemini_image_mcp.gemini_client import GeminiClient
from gemini_image_mcp.registry import ToolSchema
from gemini_image_mcp.responses import tool_result
from gemini_image_mcp.schemas import ApiRequest, ImageAsset, ImageBytes
from gemini_image_mcp.storage import save_image
from gemini_image_mcp.validation import ArgumentValidator

logger = logging.getLogger(__name__)


class ToolRunner:
    """Runs one registered tool end to end: validate, acquire, call upstream, persist."""

    def __init__(
        self,
        client: GeminiClient,
        acquirer: ImageAcquirer,
        validator: ArgumentValidator,
    ) -> None:
        self.client = client
        self.acquirer = acquirer
        self.validator = validator

    async def run(self, schema: ToolSchema, arguments: Any) -> dict[str, Any]:
        call = self.validator.validate(schema, arguments)
        self.client.require_credential()

        image: ImageAsset | None = None
        if call.image_source is not None:
            image = await self.acquirer.acquire(call.image_source)

        result = await self.client.generate(
            ApiRequest(
                mode=schema.mode,
                prompt=call.user_prompt,
                system_prompt=call.system_prompt,
                image=image,
            )
        )

        if isinstance(result, ImageBytes):
            if call.output_path is None:
                raise ValueError(f"{schema.name} returned an image but has no output_path")
            await save_image(call.output_path, result.data)
            logger.info(
                "saved %s output to %s (%d bytes)",
                schema.name,
                call.output_path,
                len(result.data),
                extra={"tool": schema.name},
            )
        return tool_result(schema.tool, result, call.output_path)

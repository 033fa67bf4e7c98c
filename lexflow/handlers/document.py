"""DOCUMENTO: generate a document from a template."""

from __future__ import annotations

from ..collaborators import DocumentGenerator
from ..contracts import ActionResult, ActionType, StepAction
from .base import ActionContext, BaseActionHandler, as_list


class DocumentHandler(BaseActionHandler):
    type = ActionType.DOCUMENTO.value
    required_config = ("plantillaDocumento",)

    def __init__(self, generator: DocumentGenerator) -> None:
        self._generator = generator

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        template = action.config["plantillaDocumento"]
        doc_type = action.config.get("tipo", template)
        document_id = await self._generator.generate(template, dict(ctx.context))
        document = {"id": document_id, "tipo": doc_type}
        documents = as_list(ctx.context.get("documentos")) + [document]
        return ActionResult(
            ok=True,
            message="GENERADO",
            data={"documento": document},
            context_updates={"documentos": documents},
        )

"""JSON script documents.

A document carries a pre-parsed script tree so hosts can ship scripts without
a text front end::

    {"name": "loot", "version": 1,
     "root": {"type": "SCRIPT", "children": [
         {"type": "STATEMENT", "line": 1, "children": [
             {"type": "COMMAND", "lexeme": "sysmsg"},
             {"type": "STRING", "lexeme": "hello"}]}]}}
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from syntax import ASTNode, ASTNodeType, ScriptLoadError


DOCUMENT_VERSION = 1


class NodeModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: ASTNodeType
    lexeme: Optional[str] = None
    line: int = Field(default=0, ge=0)
    children: List["NodeModel"] = Field(default_factory=list)

    def to_ast(self, parent: Optional[ASTNode] = None) -> ASTNode:
        node = ASTNode(self.type, self.lexeme, parent, self.line)
        for child in self.children:
            child.to_ast(node)
        return node

    @classmethod
    def from_ast(cls, node: ASTNode) -> "NodeModel":
        return cls(
            type=node.type,
            lexeme=node.lexeme,
            line=node.line,
            children=[cls.from_ast(child) for child in node.children],
        )


NodeModel.model_rebuild()


class ScriptDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "<script>"
    version: Literal[1] = DOCUMENT_VERSION
    root: NodeModel

    @field_validator("root")
    @classmethod
    def _root_is_script(cls, value: NodeModel) -> NodeModel:
        if value.type != ASTNodeType.SCRIPT:
            raise ValueError("root node must have type SCRIPT")
        for child in value.children:
            if child.type != ASTNodeType.STATEMENT:
                raise ValueError(f"script children must be STATEMENT nodes, got {child.type.value}")
        return value

    def to_ast(self) -> ASTNode:
        return self.root.to_ast()


def parse_document(text: str) -> ScriptDocument:
    try:
        return ScriptDocument.model_validate_json(text)
    except ValidationError as exc:
        raise ScriptLoadError(f"Invalid script document: {exc}") from exc


def load_document(path: str) -> ScriptDocument:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()
    except OSError as exc:
        raise ScriptLoadError(f"Failed to read script document {path}: {exc}") from exc
    return parse_document(text)


def dump_document(root: ASTNode, name: str = "<script>") -> str:
    document = ScriptDocument(name=name, root=NodeModel.from_ast(root))
    return document.model_dump_json(indent=2)

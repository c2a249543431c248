"""Resolution of cross-member references inside a stack.

Stack and member inputs/outputs may hold values like
``ref:../members/network/outputs/vpc_id``. When a stack gets stuck, the
references that still point at nothing usually name the member that never
produced its outputs, so they are listed in the failure report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..projects.models import ProjectConfig

REF_PREFIX = "ref:"


@dataclass
class Ref:
    name: str
    ref: Optional[str] = None
    resolved_value: Optional[str] = None
    resolved: bool = False

    @property
    def is_ref(self) -> bool:
        return self.ref is not None


@dataclass
class ConfigRefs:
    name: str
    id: str
    inputs: List[Ref] = field(default_factory=list)
    outputs: List[Ref] = field(default_factory=list)
    resolved: bool = False


@dataclass
class StackRef:
    name: str
    id: str
    inputs: List[Ref] = field(default_factory=list)
    outputs: List[Ref] = field(default_factory=list)
    members: List[ConfigRefs] = field(default_factory=list)
    resolved: bool = False


def is_reference(value: str) -> bool:
    return value.startswith(REF_PREFIX)


def stringify_list(values: List[Any]) -> str:
    """Render a list as ``["a", "b"]``, recursing into nested lists."""
    if not values:
        return "[]"
    parts = []
    for value in values:
        if isinstance(value, list):
            parts.append(stringify_list(value))
        else:
            parts.append(f'"{value}"')
    return f"[{', '.join(parts)}]"


def process_value(name: str, value: Any, is_output: bool = False) -> Ref:
    if value is None:
        # 未设置的输出不依赖其他成员，视为已解析
        return Ref(name=name, resolved=is_output)
    if isinstance(value, list):
        text = stringify_list(value)
    elif isinstance(value, str):
        text = value
    else:
        return Ref(name=name, resolved_value=str(value), resolved=True)

    if is_reference(text):
        return Ref(name=name, ref=text)
    return Ref(name=name, resolved_value=text, resolved=True)


def _process_inputs(inputs: Dict[str, Any]) -> List[Ref]:
    return [process_value(name, value) for name, value in inputs.items()]


def _process_outputs(outputs: Iterable[Dict[str, Any]]) -> List[Ref]:
    return [
        process_value(output.get("name", ""), output.get("value"), is_output=True)
        for output in outputs
    ]


def _all_resolved(refs: Iterable[Ref]) -> bool:
    return all(ref.resolved for ref in refs)


def build_stack_refs(stack_details: ProjectConfig, members: List[ProjectConfig]) -> StackRef:
    """Build the reference graph of a stack from its root config and member snapshots."""
    member_refs = []
    for member in members:
        inputs = _process_inputs(member.inputs)
        outputs = _process_outputs(member.outputs)
        member_refs.append(
            ConfigRefs(
                name=member.name,
                id=member.id,
                inputs=inputs,
                outputs=outputs,
                resolved=_all_resolved(inputs) and _all_resolved(outputs),
            )
        )

    stack_ref = StackRef(
        name=stack_details.name,
        id=stack_details.id,
        inputs=_process_inputs(stack_details.inputs),
        outputs=_process_outputs(stack_details.outputs),
        members=member_refs,
    )
    stack_ref.resolved = not unresolved_refs(stack_ref)
    return stack_ref


_Node = Union[StackRef, ConfigRefs, List[Ref], List[ConfigRefs], str, None]


def _navigate(node: _Node, part: str) -> _Node:
    if isinstance(node, StackRef):
        if part == "inputs":
            return node.inputs
        if part == "outputs":
            return node.outputs
        if part == "members":
            return node.members
        return next((m for m in node.members if m.name == part), None)
    if isinstance(node, ConfigRefs):
        if part == "inputs":
            return node.inputs
        if part == "outputs":
            return node.outputs
        return None
    if isinstance(node, list):
        for item in node:
            if isinstance(item, Ref) and item.name == part:
                return item.resolved_value
            if isinstance(item, ConfigRefs) and item.name == part:
                return item
    return None


def get_reference_value(root: StackRef, reference: str) -> Optional[str]:
    """Follow a ``ref:`` path through the stack graph."""
    path = reference[len(REF_PREFIX):] if is_reference(reference) else reference
    node: _Node = root
    for part in path.split("/"):
        # 相对路径片段不影响导航，所有路径都从栈根开始解析
        if part in ("", ".", ".."):
            continue
        node = _navigate(node, part)
        if node is None:
            return None
    return node if isinstance(node, str) else None


def _resolve_refs(root: StackRef, refs: List[Ref]) -> bool:
    changed = False
    for ref in refs:
        if ref.is_ref and not ref.resolved:
            value = get_reference_value(root, ref.ref)
            if value is not None:
                ref.resolved_value = value
                ref.resolved = True
                changed = True
    return changed


def resolve_references(stack_ref: StackRef) -> StackRef:
    """Resolve every reference in place.

    Passes repeat until nothing changes, so chains like
    member A -> member B -> stack input resolve regardless of member order.
    """
    changed = True
    while changed:
        changed = _resolve_refs(stack_ref, stack_ref.inputs)
        changed = _resolve_refs(stack_ref, stack_ref.outputs) or changed
        for member in stack_ref.members:
            changed = _resolve_refs(stack_ref, member.inputs) or changed
            changed = _resolve_refs(stack_ref, member.outputs) or changed

    for member in stack_ref.members:
        member.resolved = _all_resolved(member.inputs) and _all_resolved(member.outputs)
    stack_ref.resolved = not unresolved_refs(stack_ref)
    return stack_ref


def unresolved_refs(stack_ref: StackRef) -> List[Tuple[str, str, Ref]]:
    """Return ``(owner, kind, ref)`` for every reference that has no value yet."""
    groups: List[Tuple[str, str, List[Ref]]] = [
        (stack_ref.name, "Input", stack_ref.inputs),
        (stack_ref.name, "Output", stack_ref.outputs),
    ]
    for member in stack_ref.members:
        groups.append((member.name, "Input", member.inputs))
        groups.append((member.name, "Output", member.outputs))

    found = []
    for owner, kind, refs in groups:
        for ref in refs:
            if ref.is_ref and not ref.resolved:
                found.append((owner, kind, ref))
    return found


def unresolved_refs_as_text(stack_ref: StackRef) -> str:
    lines = [f"{owner} - {ref.name}({kind}): {ref.ref}" for owner, kind, ref in unresolved_refs(stack_ref)]
    return "\n".join(lines)

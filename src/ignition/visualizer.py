"""ManifestVisualizer - generates Mermaid flowchart diagrams of a skill's action graph."""

from pathlib import Path
from typing import Dict, List, Set

from .models import ActionSpec, SkillManifest, Trigger


class ManifestVisualizer:
    """
    Generate Mermaid flowchart diagrams from skill manifests.

    Each action is a node; ``dependsOn`` becomes an edge from the dependency.
    Actions without dependencies hang off Start, and actions nothing depends
    on lead to End. Conditional actions are drawn as diamonds with the
    condition on their incoming edges.

    Example:
        visualizer = ManifestVisualizer()
        manifest = loader.load_from_file("skills/lead-capture.json")
        print(visualizer.to_mermaid(manifest))

        # Save to file
        visualizer.save_diagram(manifest, "lead-capture.md")
    """

    def __init__(self) -> None:
        self._node_ids: Set[str] = set()

    def to_mermaid(
        self,
        manifest: SkillManifest,
        trigger: Trigger = Trigger.RUN,
        show_variables: bool = False,
        direction: str = "TD",
    ) -> str:
        """
        Generate Mermaid flowchart syntax from a manifest.

        Args:
            manifest: The manifest to visualize
            trigger: Which action list to draw
            show_variables: Whether to annotate nodes with their outputTo
            direction: Flowchart direction (TD=top-down, LR=left-right)

        Returns:
            Mermaid flowchart syntax as string
        """
        self._node_ids = set()
        actions = manifest.actions_for(trigger)

        lines: List[str] = [f"flowchart {direction}"]
        lines.append(f"    %% Skill: {manifest.name} v{manifest.version}")
        if manifest.description:
            lines.append(f"    %% {manifest.description}")
        lines.append("")
        lines.append("    Start([Start])")

        node_ids: Dict[str, str] = {}
        for action in actions:
            node_ids[action.id] = self._generate_node_id(action.id)
            lines.append(f"    {self._node(node_ids[action.id], action, show_variables)}")

        depended_on: Set[str] = set()
        for action in actions:
            deps = [d for d in action.depends_on if d in node_ids]
            depended_on.update(deps)
            edge = self._edge_label(action)
            sources = [node_ids[d] for d in deps] or ["Start"]
            for source in sources:
                lines.append(f"    {source} -->{edge} {node_ids[action.id]}")

        leaves = [a for a in actions if a.id not in depended_on]
        for action in leaves:
            lines.append(f"    {node_ids[action.id]} --> End")
        if not actions:
            lines.append("    Start --> End")
        lines.append("    End([End])")

        return "\n".join(lines)

    def _node(self, node_id: str, action: ActionSpec, show_variables: bool) -> str:
        label = self._escape_label(action.label)
        label += f"\\n{self._escape_label(action.type)}"
        if show_variables and action.output_to:
            label += f"\\n-> {action.output_to}"

        if action.when is not None:
            return f'{node_id}{{"{label}"}}'
        return f'{node_id}["{label}"]'

    def _edge_label(self, action: ActionSpec) -> str:
        if action.when is None:
            return ""
        return f"|{self._shorten_condition(action.when.condition)}|"

    def _generate_node_id(self, name: str) -> str:
        """Generate a unique Mermaid-safe node id from an action id."""
        base_id = name.replace(" ", "_").replace("-", "_")
        base_id = "".join(c for c in base_id if c.isalnum() or c == "_") or "action"
        if base_id in ("Start", "End"):
            base_id = f"{base_id}_action"

        node_id = base_id
        counter = 1
        while node_id in self._node_ids:
            node_id = f"{base_id}_{counter}"
            counter += 1

        self._node_ids.add(node_id)
        return node_id

    def _escape_label(self, text: str) -> str:
        text = text.replace('"', "'")
        text = text.replace("[", "(")
        text = text.replace("]", ")")
        text = text.replace("|", "/")
        return text

    def _shorten_condition(self, condition: str, max_len: int = 40) -> str:
        condition = condition.strip()
        condition = condition.replace("{{", "").replace("}}", "").strip()
        condition = condition.replace("{", "").replace("}", "")

        if len(condition) > max_len:
            condition = condition[: max_len - 3] + "..."

        return self._escape_label(condition)

    def save_diagram(
        self,
        manifest: SkillManifest,
        output_path: str,
        trigger: Trigger = Trigger.RUN,
        show_variables: bool = False,
        direction: str = "TD",
    ) -> None:
        """
        Save Mermaid diagram to a file.

        Args:
            manifest: The manifest to visualize
            output_path: Path to output file (.md or .mmd)
            trigger: Which action list to draw
            show_variables: Whether to annotate nodes with their outputTo
            direction: Flowchart direction (TD=top-down, LR=left-right)
        """
        mermaid_code = self.to_mermaid(manifest, trigger, show_variables, direction)

        path = Path(output_path)

        if path.suffix == ".md":
            content = f"# {manifest.name}\n\n"
            if manifest.description:
                content += f"{manifest.description}\n\n"
            content += f"```mermaid\n{mermaid_code}\n```\n"
        else:
            content = mermaid_code

        path.write_text(content, encoding="utf-8")

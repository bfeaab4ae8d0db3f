"""Raw application context to enriched session context."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from toolgate.agent.actions import ActionHandler
from toolgate.models import HistoryEntry, RawApplicationContext, SelectedElement

logger = logging.getLogger(__name__)

# Known elements; anything else gets details derived from its type.
ELEMENT_CATALOG: Dict[str, Dict[str, Any]] = {
    "test_cube_1": {
        "name": "Test Cube",
        "description": "A test cube for development",
        "dimensions": {"width": 100, "height": 100, "depth": 100},
        "position": {"x": 0, "y": 0, "z": 0},
        "material": "aluminum",
    },
    "test_cylinder_1": {
        "name": "Test Cylinder",
        "description": "A test cylinder for development",
        "dimensions": {"radius": 50, "height": 200},
        "position": {"x": 150, "y": 0, "z": 0},
        "material": "steel",
    },
}

TYPE_DIMENSIONS: Dict[str, Dict[str, float]] = {
    "cube": {"width": 100, "height": 100, "depth": 100},
    "cylinder": {"radius": 50, "height": 100},
    "sphere": {"radius": 50},
    "cone": {"radius": 50, "height": 100},
    "torus": {"radius": 50, "tube": 10},
}

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "default_material": "aluminum",
    "default_units": "mm",
    "default_tolerance": 0.01,
    "color_scheme": "default",
}


def element_details(element: SelectedElement) -> Dict[str, Any]:
    details = ELEMENT_CATALOG.get(element.id)
    if details is None:
        details = {
            "name": f"{element.type}_{element.id[:8]}",
            "description": f"A {element.type} element",
            "dimensions": dict(TYPE_DIMENSIONS.get(element.type, {})),
            "position": {"x": 0, "y": 0, "z": 0},
        }
    # id and type always come from the validated element
    return {**details, **element.properties, "id": element.id, "type": element.type}


class ContextProcessor:
    def __init__(self, action_handler: Optional[ActionHandler] = None):
        self.action_handler = action_handler or ActionHandler()

    def process(self, raw: RawApplicationContext, history: Sequence[HistoryEntry] = ()) -> Dict[str, Any]:
        logger.debug(f"Processing context for session {raw.session_id}")
        elements = [element_details(element) for element in raw.selected_elements]

        context: Dict[str, Any] = {
            "mode": raw.mode,
            "active_view": raw.active_view,
            "summary": self.summarize(raw, elements),
            "selected_elements": elements,
            "active_tool": raw.active_tool.model_dump() if raw.active_tool else None,
            "current_project": raw.current_project.model_dump() if raw.current_project else None,
            "view_state": dict(raw.view_state),
            "recent_operations": [op.model_dump() for op in raw.recent_operations],
            "constraints": self.constraints(raw),
            "statistics": {"element_count": len(elements), "complexity_score": 0.5},
            "preferences": dict(DEFAULT_PREFERENCES),
            "history_length": len(history),
        }
        context["available_actions"] = [action.name for action in self.action_handler.get_available_actions(context)]
        return context

    def summarize(self, raw: RawApplicationContext, elements: List[Dict[str, Any]]) -> str:
        parts = [f"User is in {raw.mode.upper()} mode with {raw.active_view} view active."]
        if raw.active_tool:
            parts.append(f"The active tool is {raw.active_tool.name}.")
        if raw.current_project:
            parts.append(f"Working on project: {raw.current_project.name}.")

        if len(elements) == 1:
            element = elements[0]
            parts.append(f"Selected: 1 {element['type']} ({element.get('name') or element['id']}).")
        elif elements:
            counts = Counter(element["type"] for element in elements)
            listed = ", ".join(f"{count} {kind}{'s' if count > 1 else ''}" for kind, count in counts.items())
            parts.append(f"Selected: {listed}.")
        else:
            parts.append("No elements are currently selected.")

        if raw.recent_operations:
            parts.append(f"Last operation: {raw.recent_operations[0].type}.")
        return " ".join(parts)

    def constraints(self, raw: RawApplicationContext) -> Dict[str, Any]:
        constraints: Dict[str, Any] = {"max_elements": 10000}
        if raw.mode == "cad":
            constraints["min_wall_thickness"] = 1.0
        elif raw.mode == "cam":
            constraints["max_tool_diameter"] = 12.0
        elif raw.mode == "gcode":
            constraints["max_feed_rate"] = 5000
        return constraints

"""
Action catalog and execution.

The catalog is static. ``ActionHandler.get_available_actions`` narrows it to
what fits the current mode and selection, and ``ActionHandler.execute``
validates parameters and produces a simulated result together with the
context delta the caller should merge.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from toolgate.agent.parameters import ActionParameter, infer_parameters, validate_parameters
from toolgate.errors import UnknownActionError, ValidationFailedError
from toolgate.models import ActionResult, Artifact, CandidateAction

logger = logging.getLogger(__name__)

MAX_RECENT_OPERATIONS = 10

MODE_ACTIONS: Dict[str, Tuple[str, ...]] = {
    "cad": ("generateCADComponent", "modifyElement", "createExtrusion", "createHole"),
    "cam": ("generateToolpath", "analyzeModel"),
    "gcode": ("optimizeGCode",),
}

Handler = Callable[[Dict[str, Any], Optional[Dict[str, Any]]], Tuple[str, Dict[str, Any], List[Artifact]]]


@dataclass
class ActionDefinition:
    name: str
    description: str
    category: str
    examples: Dict[str, Any]
    constraints: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    applicable_element_types: List[str] = field(default_factory=list)
    creates_element: bool = False

    def __post_init__(self) -> None:
        self.parameters: List[ActionParameter] = infer_parameters(self.examples, self.constraints)

    def to_candidate(self, hints: List[str]) -> CandidateAction:
        return CandidateAction(
            name=self.name,
            description=self.description,
            category=self.category,
            parameters=self.parameters,
            examples=self.examples,
            contextual_hints=hints,
            applicable_element_types=self.applicable_element_types,
        )


def _required(description: str, **extra: Any) -> Dict[str, Any]:
    return {"description": description, "required": True, "default": None, **extra}


def _optional(description: str, **extra: Any) -> Dict[str, Any]:
    return {"description": description, **extra}


CATALOG: List[ActionDefinition] = [
    ActionDefinition(
        name="generateCADComponent",
        description="Generate a CAD component based on a description",
        category="cad",
        examples={
            "description": "Mounting bracket with two M6 holes",
            "type": "cube",
            "dimensions": {"width": 100, "height": 100, "depth": 100},
            "position": {"x": 0, "y": 0, "z": 0},
            "material": "aluminum",
        },
        constraints={
            "description": _required("Detailed description of the component to generate"),
            "type": _required(
                "Type of component to generate",
                enum=["cube", "cylinder", "sphere", "cone", "torus", "custom"],
            ),
            "dimensions": _optional("Dimensions of the component"),
            "position": _optional("Position of the component"),
            "material": _optional("Material of the component"),
        },
        creates_element=True,
    ),
    ActionDefinition(
        name="modifyElement",
        description="Modify properties of an existing element",
        category="cad",
        examples={"elementId": "cube_1", "properties": {"material": "steel"}},
        constraints={
            "elementId": _required("ID of the element to modify"),
            "properties": _required("Properties to modify"),
        },
        applicable_element_types=["cube", "cylinder", "sphere", "cone", "torus", "model"],
    ),
    ActionDefinition(
        name="createExtrusion",
        description="Create an extrusion from a selected face or sketch",
        category="cad",
        examples={"elementId": "face_1", "distance": 10.0, "direction": "normal"},
        constraints={
            "elementId": _required("ID of the face or sketch to extrude"),
            "distance": _required("Extrusion distance", minimum=0.1, maximum=1000),
            "direction": _optional("Extrusion direction", enum=["normal", "reverse", "both"]),
        },
        applicable_element_types=["face", "sketch"],
        creates_element=True,
    ),
    ActionDefinition(
        name="createHole",
        description="Create a hole in a selected face",
        category="cad",
        examples={"faceId": "face_1", "diameter": 6.0, "depth": 10.0, "position": {"x": 0, "y": 0}},
        constraints={
            "faceId": _required("ID of the face to create the hole in"),
            "diameter": _required("Diameter of the hole", minimum=0.1, maximum=1000),
            "depth": _required("Depth of the hole", minimum=0.1, maximum=1000),
            "position": _optional("Position of the hole relative to the face"),
        },
        applicable_element_types=["face"],
        creates_element=True,
    ),
    ActionDefinition(
        name="generateToolpath",
        description="Generate a toolpath for machining",
        category="cam",
        examples={"elementIds": ["model_1"], "toolDiameter": 6.0, "stepover": 40, "strategy": "pocket"},
        constraints={
            "elementIds": _required("IDs of elements to include in the toolpath"),
            "toolDiameter": _required("Diameter of the cutting tool", minimum=0.1, maximum=50),
            "stepover": _optional("Step-over percentage for the toolpath", minimum=10, maximum=90),
            "strategy": _optional("Machining strategy", enum=["contour", "pocket", "drill", "adaptive"]),
        },
        applicable_element_types=["model", "mesh", "solid"],
    ),
    ActionDefinition(
        name="optimizeGCode",
        description="Optimize G-code for a specific machine",
        category="gcode",
        examples={"gcode": "G0 X0 Y0 Z10\nG1 X10 F100", "machineType": "3-axis", "optimizationGoal": "balanced"},
        constraints={
            "gcode": _required("G-code to optimize"),
            "machineType": _required("Type of CNC machine", enum=["3-axis", "4-axis", "5-axis"]),
            "optimizationGoal": _optional(
                "Optimization goal",
                enum=["speed", "quality", "tool-life", "balanced"],
            ),
        },
    ),
    ActionDefinition(
        name="analyzeModel",
        description="Analyze a model for machining issues",
        category="cam",
        examples={"elementIds": ["model_1"], "analysisType": "manufacturability"},
        constraints={
            "elementIds": _required("IDs of elements to analyze"),
            "analysisType": _optional(
                "Type of analysis to perform",
                enum=["manufacturability", "structural", "thin-walls", "undercuts"],
            ),
        },
        applicable_element_types=["model", "mesh", "solid"],
    ),
]

ACTIONS: Dict[str, ActionDefinition] = {action.name: action for action in CATALOG}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _selected(context: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    if not context:
        return []
    return list(context.get("selected_elements") or [])


def _require_element(context: Optional[Mapping[str, Any]], element_id: str, label: str = "Element", element_type: Optional[str] = None) -> Dict[str, Any]:
    for element in _selected(context):
        if element.get("id") == element_id and (element_type is None or element.get("type") == element_type):
            return element
    raise ValidationFailedError(f"{label} with ID {element_id} not found in current context")


def _with_defaults(action: ActionDefinition, params: Mapping[str, Any]) -> Dict[str, Any]:
    values = dict(params)
    for param in action.parameters:
        if values.get(param.name) is None and param.default is not None:
            values[param.name] = param.default
    return values


class ActionHandler:
    """Catalog filtering and simulated execution of domain actions."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {
            "generateCADComponent": self._generate_cad_component,
            "modifyElement": self._modify_element,
            "createExtrusion": self._create_extrusion,
            "createHole": self._create_hole,
            "generateToolpath": self._generate_toolpath,
            "optimizeGCode": self._optimize_gcode,
            "analyzeModel": self._analyze_model,
        }

    def get_definition(self, name: str) -> ActionDefinition:
        action = ACTIONS.get(name)
        if action is None:
            raise UnknownActionError(name)
        return action

    def get_available_actions(self, context: Optional[Mapping[str, Any]]) -> List[CandidateAction]:
        context = context or {}
        mode = context.get("mode")
        selected = _selected(context)
        selected_types = {element.get("type") for element in selected}

        allowed = MODE_ACTIONS.get(mode)
        candidates: List[CandidateAction] = []
        for action in CATALOG:
            if allowed is not None and action.name not in allowed:
                continue
            if selected and action.applicable_element_types:
                if not selected_types.intersection(action.applicable_element_types):
                    continue
            candidates.append(action.to_candidate(self._hints(action, mode, selected)))
        return candidates

    def _hints(self, action: ActionDefinition, mode: Optional[str], selected: List[Dict[str, Any]]) -> List[str]:
        hints: List[str] = []
        if action.name == "generateCADComponent":
            hints.append("Provide a detailed description for best results.")
            if mode == "cad":
                hints.append("The component will be created at the origin unless a position is specified.")
        elif action.name == "modifyElement":
            if len(selected) == 1:
                element = selected[0]
                hints.append(f"Element {element.get('name') or element.get('id')} is currently selected.")
            elif len(selected) > 1:
                hints.append(f"{len(selected)} elements are currently selected. This action only works on one element.")
        elif action.name == "createExtrusion":
            if any(element.get("type") in ("face", "sketch") for element in selected):
                hints.append("A face or sketch is selected that can be extruded.")
        elif action.name == "generateToolpath":
            if mode == "cam":
                hints.append("Make sure to select appropriate machining parameters for your material.")
        return hints

    def execute(self, name: str, params: Mapping[str, Any], context: Optional[Mapping[str, Any]]) -> ActionResult:
        """
        Validate and run one action against a context snapshot.

        Raises:
            UnknownActionError: If the action is not in the catalog
            ValidationFailedError: If parameters or referenced elements are invalid
        """
        action = self.get_definition(name)
        errors = validate_parameters(action.parameters, params)
        if errors:
            raise ValidationFailedError(errors[0], {"errors": errors, "action": name})

        values = _with_defaults(action, params)
        logger.info(f"Executing action: {name}")
        message, payload, artifacts = self._handlers[name](values, dict(context) if context else None)

        artifacts.insert(0, Artifact(type="simulation_log", data=f"Executed {name} with {sorted(values)}"))
        return ActionResult(
            success=True,
            message=message,
            updated_context=self.context_delta(action, dict(params), context, payload),
            artifacts=artifacts,
        )

    def context_delta(
        self,
        action: ActionDefinition,
        params: Dict[str, Any],
        context: Optional[Mapping[str, Any]],
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Changes to merge into the session context after ``action`` ran."""
        context = context or {}
        summary = context.get("summary") or "Context"
        operation = {"type": action.name, "timestamp": time.time(), "parameters": params}
        recent = [operation, *(context.get("recent_operations") or [])][:MAX_RECENT_OPERATIONS]

        delta: Dict[str, Any] = {
            "summary": f"{summary}; Executed: {action.name}",
            "recent_operations": recent,
            "last_result": payload,
        }
        if action.creates_element:
            statistics = context.get("statistics") or {}
            delta["statistics"] = {"element_count": int(statistics.get("element_count") or 0) + 1}
        return delta

    # =========================
    # Handlers
    # =========================

    def _generate_cad_component(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        component_id = _new_id("component")
        component = {
            "id": component_id,
            "type": params["type"],
            "name": f"{params['type']}_{component_id[-8:]}",
            "description": params["description"],
            "dimensions": params["dimensions"],
            "position": params["position"],
            "material": params["material"],
        }
        logger.info(f"Created CAD component: {component_id}")
        return (
            f"Successfully created {params['type']} component.",
            {"component": component},
            [Artifact(type="brep", data=component)],
        )

    def _modify_element(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        element_id = params["elementId"]
        _require_element(context, element_id)
        logger.info(f"Modified element: {element_id}")
        return (
            f"Successfully modified element {element_id}.",
            {"element_id": element_id, "properties": params["properties"]},
            [],
        )

    def _create_extrusion(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        element_id = params["elementId"]
        _require_element(context, element_id)
        extrusion_id = _new_id("extrusion")
        payload = {
            "id": extrusion_id,
            "source_element_id": element_id,
            "distance": params["distance"],
            "direction": params["direction"],
        }
        logger.info(f"Created extrusion: {extrusion_id}")
        return (
            f"Successfully created extrusion from element {element_id}.",
            payload,
            [Artifact(type="brep", data=payload)],
        )

    def _create_hole(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        face_id = params["faceId"]
        _require_element(context, face_id, label="Face", element_type="face")
        hole_id = _new_id("hole")
        payload = {
            "id": hole_id,
            "face_id": face_id,
            "diameter": params["diameter"],
            "depth": params["depth"],
            "position": params["position"],
        }
        logger.info(f"Created hole: {hole_id}")
        return (
            f"Successfully created {params['diameter']:g}mm hole with depth {params['depth']:g}mm.",
            payload,
            [Artifact(type="brep", data=payload)],
        )

    def _generate_toolpath(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        if not context:
            raise ValidationFailedError("No context available for generating toolpath")
        toolpath_id = _new_id("toolpath")
        element_ids = list(params["elementIds"])
        # Rough estimate: more elements and smaller tools take longer.
        estimated = int(300 + 120 * len(element_ids) * (6.0 / params["toolDiameter"]) * (40 / params["stepover"]))
        payload = {
            "id": toolpath_id,
            "element_ids": element_ids,
            "tool_diameter": params["toolDiameter"],
            "stepover": params["stepover"],
            "strategy": params["strategy"],
            "estimated_machining_time": estimated,
        }
        logger.info(f"Generated toolpath: {toolpath_id}")
        return (
            f"Successfully generated {params['strategy']} toolpath with {params['toolDiameter']:g}mm tool.",
            payload,
            [Artifact(type="toolpath", data=payload)],
        )

    def _optimize_gcode(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        gcode: str = params["gcode"]
        machine_type = params["machineType"]
        goal = params["optimizationGoal"]
        lines = gcode.split("\n")
        sample = "\n".join(lines[:3]) + ("\n..." if len(lines) > 3 else "")
        time_reduction = {"speed": 20, "quality": 5, "tool-life": 8, "balanced": 12}[goal]
        metrics = {
            "original_lines": len(lines),
            "optimized_lines": int(len(lines) * 0.9),
            "time_reduction": time_reduction,
        }
        optimized = f"; Optimized for {machine_type} with goal: {goal}\n{gcode}"
        logger.info(f"Optimized G-code for {machine_type} ({len(gcode)} chars)")
        return (
            f"Successfully optimized G-code for {machine_type}. {time_reduction}% reduction in machining time.",
            {"sample_input": sample, "machine_type": machine_type, "optimization_goal": goal, "metrics": metrics},
            [Artifact(type="gcode", data=optimized)],
        )

    def _analyze_model(self, params: Dict[str, Any], context: Optional[Dict[str, Any]]):
        if not context:
            raise ValidationFailedError("No context available for model analysis")
        constraints = context.get("constraints") or {}
        min_wall = constraints.get("min_wall_thickness", 1.0)
        issues = [
            {
                "type": "thin_wall",
                "severity": "warning",
                "description": f"Wall thickness below recommended minimum ({min_wall:g}mm)",
                "recommendation": f"Increase wall thickness to at least {min_wall * 1.5:g}mm",
            },
            {
                "type": "sharp_corner",
                "severity": "info",
                "description": "Sharp internal corner",
                "recommendation": "Add fillet to internal corner for better tool access",
            },
        ]
        report = {
            "analysis_type": params["analysisType"],
            "element_ids": list(params["elementIds"]),
            "issues": issues,
        }
        logger.info(f"Analyzed model: {report['element_ids']}")
        return (
            f"Analysis complete. Found {len(issues)} issues.",
            {"analysis_results": report},
            [Artifact(type="analysis_report", data=report)],
        )

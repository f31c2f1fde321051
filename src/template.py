"""Template loading and validation for stack orchestration.

Templates describe a stack declaratively: Parameters, Conditions,
Resources and Outputs (CloudFormation-shaped, JSON or YAML with short-form
intrinsic tags such as !Ref and !Sub).

Loading only validates structure and references; rendering a template for
a plan resolves parameters and conditions and yields the desired resources.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from intrinsics import (
    NO_VALUE,
    PSEUDO_PARAMETERS,
    CONDITION_FUNCTIONS,
    Evaluator,
    ParseError,
    TemplateError,
    TemplateReferenceError,
    evaluate_conditions,
    function_name,
    iter_references,
)

logger = logging.getLogger(__name__)

# Top-level sections understood by the parser
KNOWN_SECTIONS = {
    'AWSTemplateFormatVersion',
    'Description',
    'Metadata',
    'Parameters',
    'Conditions',
    'Resources',
    'Outputs',
}

DELETION_POLICIES = ('Delete', 'Retain')

NUMBER_TYPES = ('Number',)
LIST_TYPES = ('CommaDelimitedList', 'List<Number>', 'List<String>')

# Logical names: alphanumeric, as in CloudFormation
_LOGICAL_NAME = re.compile(r'^[A-Za-z0-9]+$')

__all__ = [
    'Condition',
    'DesiredResource',
    'Output',
    'Parameter',
    'ParameterError',
    'ParseError',
    'RenderedTemplate',
    'Resource',
    'Template',
    'TemplateError',
    'TemplateLoader',
    'TemplateReferenceError',
    'load_template',
]


class ParameterError(ParseError):
    """Invalid, missing or unknown parameter value."""


@dataclass
class Parameter:
    """A template input resolved at plan time.

    Attributes:
        name: Parameter name (also the Ref target)
        type: Declared type (String, Number, CommaDelimitedList, List<...>,
              or a provider-specific type treated as String)
        default: Default value (None = required)
        allowed_values: Permitted values (None = unconstrained)
        allowed_pattern: Regex the whole value must match
        min_length / max_length: String length bounds
        min_value / max_value: Number bounds
        description: Free-text description
        no_echo: Mask the value in output
        label: Display label from Metadata
        group: Display group from Metadata
    """
    name: str
    type: str = 'String'
    default: Any = None
    allowed_values: Optional[list] = None
    allowed_pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    description: str = ''
    no_echo: bool = False
    label: Optional[str] = None
    group: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'Parameter':
        """Create Parameter from its template definition."""
        if not isinstance(data, dict):
            raise ParseError(f"Parameter '{name}' must be a mapping")
        if 'Type' not in data or not isinstance(data['Type'], str):
            raise ParseError(f"Parameter '{name}' missing required field: Type")
        allowed = data.get('AllowedValues')
        if allowed is not None and not isinstance(allowed, list):
            raise ParseError(f"Parameter '{name}': AllowedValues must be a list")
        pattern = data.get('AllowedPattern')
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ParseError(f"Parameter '{name}': invalid AllowedPattern: {e}")
        return cls(
            name=name,
            type=data['Type'],
            default=data.get('Default'),
            allowed_values=allowed,
            allowed_pattern=pattern,
            min_length=data.get('MinLength'),
            max_length=data.get('MaxLength'),
            min_value=data.get('MinValue'),
            max_value=data.get('MaxValue'),
            description=str(data.get('Description', '')).strip(),
            no_echo=str(data.get('NoEcho', 'false')).lower() == 'true',
        )

    @property
    def is_required(self) -> bool:
        return self.default is None

    def coerce(self, raw: Any) -> Any:
        """Convert a raw input or default to the parameter's type and validate it.

        Raises:
            ParameterError: If the value violates a constraint
        """
        if self.type in LIST_TYPES:
            items = raw if isinstance(raw, list) else [s.strip() for s in str(raw).split(',')]
            if self.type == 'List<Number>':
                return [self._number(item) for item in items]
            for item in items:
                self._check_allowed(str(item))
            return [str(item) for item in items]

        if self.type in NUMBER_TYPES:
            value = self._number(raw)
            self._check_allowed(str(raw))
            if self.min_value is not None and value < self.min_value:
                raise ParameterError(f"Parameter '{self.name}' must be >= {self.min_value}")
            if self.max_value is not None and value > self.max_value:
                raise ParameterError(f"Parameter '{self.name}' must be <= {self.max_value}")
            return value

        text = str(raw)
        self._check_allowed(text)
        if self.min_length is not None and len(text) < self.min_length:
            raise ParameterError(f"Parameter '{self.name}' must be at least {self.min_length} characters")
        if self.max_length is not None and len(text) > self.max_length:
            raise ParameterError(f"Parameter '{self.name}' must be at most {self.max_length} characters")
        return text

    def _number(self, raw: Any) -> Any:
        try:
            return int(raw)
        except (TypeError, ValueError):
            try:
                return float(raw)
            except (TypeError, ValueError):
                raise ParameterError(f"Parameter '{self.name}' must be a number, got '{raw}'") from None

    def _check_allowed(self, text: str) -> None:
        if self.allowed_values is not None and text not in [str(v) for v in self.allowed_values]:
            raise ParameterError(
                f"Parameter '{self.name}' value '{text}' not in allowed values: "
                f"{', '.join(str(v) for v in self.allowed_values)}"
            )
        if self.allowed_pattern is not None and not re.fullmatch(self.allowed_pattern, text):
            raise ParameterError(
                f"Parameter '{self.name}' value '{text}' does not match pattern {self.allowed_pattern}"
            )


@dataclass
class Condition:
    """A named boolean expression over parameters."""
    name: str
    expression: Any


@dataclass
class Resource:
    """A resource declaration in a template.

    Attributes:
        name: Logical name (unique within the template)
        type: Resource type tag (e.g. AWS::S3::Bucket)
        properties: Raw property bag (may contain intrinsic functions)
        condition: Condition controlling inclusion (None = always)
        depends_on: Explicit DependsOn names
        deletion_policy: Delete or Retain
        references: Every logical resource name referenced (explicit + implicit)
    """
    name: str
    type: str
    properties: dict = field(default_factory=dict)
    condition: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'
    references: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'Resource':
        """Create Resource from its template definition."""
        if not isinstance(data, dict):
            raise ParseError(f"Resource '{name}' must be a mapping")
        if not isinstance(data.get('Type'), str) or not data['Type']:
            raise ParseError(f"Resource '{name}' missing required field: Type")

        properties = data.get('Properties') or {}
        if not isinstance(properties, dict):
            raise ParseError(f"Resource '{name}': Properties must be a mapping")

        depends_on = data.get('DependsOn', [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ParseError(f"Resource '{name}': DependsOn must be a name or list of names")

        condition = data.get('Condition')
        if condition is not None and not isinstance(condition, str):
            raise ParseError(f"Resource '{name}': Condition must be a condition name")

        policy = data.get('DeletionPolicy', 'Delete')
        if policy not in DELETION_POLICIES:
            raise ParseError(
                f"Resource '{name}': unsupported DeletionPolicy '{policy}'. "
                f"Supported: {', '.join(DELETION_POLICIES)}"
            )

        return cls(
            name=name,
            type=data['Type'],
            properties=properties,
            condition=condition,
            depends_on=list(depends_on),
            deletion_policy=policy,
        )

    @property
    def dependencies(self) -> list[str]:
        """Every referenced resource, whichever condition branch it sits in."""
        return self.references


@dataclass
class Output:
    """A named value exposed after apply."""
    name: str
    value: Any
    description: str = ''
    condition: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'Output':
        """Create Output from its template definition."""
        if not isinstance(data, dict) or 'Value' not in data:
            raise ParseError(f"Output '{name}' missing required field: Value")
        condition = data.get('Condition')
        if condition is not None and not isinstance(condition, str):
            raise ParseError(f"Output '{name}': Condition must be a condition name")
        return cls(
            name=name,
            value=data['Value'],
            description=str(data.get('Description', '')).strip(),
            condition=condition,
        )


@dataclass
class DesiredResource:
    """A resource after parameter and condition evaluation.

    properties is the plan-pass value tree: references to other resources
    are kept symbolic, everything else is resolved.
    """
    name: str
    type: str
    properties: dict
    dependencies: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'


@dataclass
class RenderedTemplate:
    """Template rendered for one plan: parameters, conditions and desired resources."""
    template: 'Template'
    parameters: dict
    pseudo: dict
    conditions: dict[str, bool]
    resources: list[DesiredResource]
    excluded: list[str] = field(default_factory=list)

    @property
    def resource_names(self) -> list[str]:
        return [r.name for r in self.resources]

    def get_resource(self, name: str) -> DesiredResource:
        """Get a desired resource by name.

        Raises:
            KeyError: If the resource is not part of the rendered stack
        """
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)

    def active_outputs(self) -> list[Output]:
        """Outputs whose condition (if any) holds."""
        return [
            o for o in self.template.outputs.values()
            if o.condition is None or self.conditions[o.condition]
        ]

    def evaluator(self, resolver=None) -> Evaluator:
        """Evaluator bound to this rendering (resolver=None keeps resource refs symbolic)."""
        return Evaluator(
            self.parameters,
            self.pseudo,
            self.conditions,
            resources=frozenset(self.resource_names),
            excluded=frozenset(self.excluded),
            resolver=resolver,
        )


@dataclass
class Template:
    """Declarative stack template.

    Attributes:
        description: Template description
        parameters: Parameter definitions by name (declaration order)
        conditions: Condition definitions by name
        resources: Resource definitions by logical name (declaration order)
        outputs: Output definitions by name
        source_path: Path the template was loaded from (for messages)
    """
    resources: dict[str, Resource]
    description: str = ''
    parameters: dict[str, Parameter] = field(default_factory=dict)
    conditions: dict[str, Condition] = field(default_factory=dict)
    outputs: dict[str, Output] = field(default_factory=dict)
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Any, source_path: Optional[Path] = None) -> 'Template':
        """Create Template from a parsed document.

        Raises:
            ParseError: On malformed structure
            TemplateReferenceError: On references to undefined logical names
        """
        if not isinstance(data, dict):
            raise ParseError("Template must be a mapping")

        for section in data:
            if section not in KNOWN_SECTIONS:
                raise ParseError(f"Unknown template section: {section}")

        resources_data = data.get('Resources')
        if not isinstance(resources_data, dict) or not resources_data:
            raise ParseError("Template must have at least one resource in Resources")

        parameters = {
            name: Parameter.from_dict(name, p)
            for name, p in _section(data, 'Parameters').items()
        }
        _apply_interface_metadata(parameters, data.get('Metadata'))

        conditions = {
            name: Condition(name=name, expression=expr)
            for name, expr in _section(data, 'Conditions').items()
        }

        resources: dict[str, Resource] = {}
        for name, r in resources_data.items():
            if not isinstance(name, str) or not _LOGICAL_NAME.match(name):
                raise ParseError(f"Invalid logical name '{name}': must be alphanumeric")
            if name in parameters:
                raise ParseError(f"Logical name '{name}' is used by both a parameter and a resource")
            resources[name] = Resource.from_dict(name, r)

        outputs = {
            name: Output.from_dict(name, o)
            for name, o in _section(data, 'Outputs').items()
        }

        template = cls(
            resources=resources,
            description=str(data.get('Description', '')).strip(),
            parameters=parameters,
            conditions=conditions,
            outputs=outputs,
            source_path=source_path,
        )
        template._validate_references()
        return template

    def _validate_references(self) -> None:
        """Check every reference resolves to a defined name."""
        resource_names = set(self.resources)
        value_names = set(self.parameters) | PSEUDO_PARAMETERS

        def check(owner: str, value: Any, allow_resources: bool = True) -> list[str]:
            referenced: list[str] = []
            for name, _attr, kind in iter_references(value, owner):
                if kind == 'Condition':
                    if name not in self.conditions:
                        raise ParseError(f"{owner}: unknown condition '{name}'")
                    continue
                if kind == 'GetAtt' or (kind == 'Sub' and _attr is not None):
                    if name not in resource_names:
                        raise TemplateReferenceError(f"{owner}: references undefined resource '{name}'")
                elif name in value_names:
                    continue
                elif name not in resource_names:
                    raise TemplateReferenceError(f"{owner}: references undefined name '{name}'")
                if not allow_resources:
                    raise ParseError(f"{owner}: conditions cannot reference resource '{name}'")
                if name not in referenced:
                    referenced.append(name)
            return referenced

        for cond in self.conditions.values():
            fn = function_name(cond.expression)
            if fn not in CONDITION_FUNCTIONS:
                raise ParseError(
                    f"Conditions.{cond.name}: must be a condition function "
                    f"({', '.join(sorted(CONDITION_FUNCTIONS))})"
                )
            check(f'Conditions.{cond.name}', cond.expression, allow_resources=False)

        for resource in self.resources.values():
            owner = f'Resources.{resource.name}'
            if resource.condition is not None and resource.condition not in self.conditions:
                raise ParseError(f"{owner}: unknown condition '{resource.condition}'")
            for dep in resource.depends_on:
                if dep not in resource_names:
                    raise TemplateReferenceError(f"{owner}: DependsOn references undefined resource '{dep}'")
            implicit = check(f'{owner}.Properties', resource.properties)
            resource.references = list(dict.fromkeys(resource.depends_on + implicit))

        for output in self.outputs.values():
            owner = f'Outputs.{output.name}'
            if output.condition is not None and output.condition not in self.conditions:
                raise ParseError(f"{owner}: unknown condition '{output.condition}'")
            check(owner, output.value)

    def resolve_parameters(self, overrides: Optional[dict] = None) -> dict[str, Any]:
        """Resolve parameter values from overrides and defaults.

        Args:
            overrides: Input values by parameter name (e.g. from --param K=V)

        Returns:
            Mapping of parameter name -> typed value

        Raises:
            ParameterError: On unknown names, missing values or constraint violations
        """
        overrides = overrides or {}
        unknown = sorted(set(overrides) - set(self.parameters))
        if unknown:
            raise ParameterError(f"Unknown parameter(s): {', '.join(unknown)}")

        values: dict[str, Any] = {}
        missing: list[str] = []
        for name, param in self.parameters.items():
            raw = overrides.get(name, param.default)
            if raw is None:
                missing.append(name)
                continue
            values[name] = param.coerce(raw)
        if missing:
            raise ParameterError(f"Missing value for required parameter(s): {', '.join(missing)}")
        return values

    def render(self, parameter_values: Optional[dict], pseudo: dict) -> RenderedTemplate:
        """Resolve parameters and conditions and compute the desired resources.

        Args:
            parameter_values: Input values by parameter name
            pseudo: Pseudo parameter values (see intrinsics.pseudo_parameters)

        Returns:
            RenderedTemplate with desired resources in declaration order

        Raises:
            ParseError / TemplateReferenceError: On evaluation errors
        """
        parameters = self.resolve_parameters(parameter_values)
        conditions = evaluate_conditions(
            {name: c.expression for name, c in self.conditions.items()},
            parameters,
            pseudo,
        )

        included = [
            r for r in self.resources.values()
            if r.condition is None or conditions[r.condition]
        ]
        excluded = [r.name for r in self.resources.values() if r not in included]
        if excluded:
            logger.debug(f"Resources excluded by conditions: {', '.join(excluded)}")

        rendered = RenderedTemplate(
            template=self,
            parameters=parameters,
            pseudo=pseudo,
            conditions=conditions,
            resources=[],
            excluded=excluded,
        )
        # Plan pass: resource refs stay symbolic
        evaluator = Evaluator(
            parameters,
            pseudo,
            conditions,
            resources=frozenset(r.name for r in included),
            excluded=frozenset(excluded),
        )

        for resource in included:
            owner = f'Resources.{resource.name}'
            for dep in resource.depends_on:
                if dep in excluded:
                    raise TemplateReferenceError(
                        f"{owner}: DependsOn references resource '{dep}' which is excluded by its condition"
                    )
            properties = evaluator.evaluate(resource.properties, f'{owner}.Properties')
            if properties is NO_VALUE:
                properties = {}
            implicit = [name for name, _attr, kind in iter_references(properties)
                        if kind != 'Condition' and name in self.resources]
            dependencies = list(dict.fromkeys(resource.depends_on + implicit))
            rendered.resources.append(DesiredResource(
                name=resource.name,
                type=resource.type,
                properties=properties,
                dependencies=dependencies,
                deletion_policy=resource.deletion_policy,
            ))

        return rendered


def _section(data: dict, name: str) -> dict:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ParseError(f"Template section {name} must be a mapping")
    return section


def _apply_interface_metadata(parameters: dict[str, Parameter], metadata: Any) -> None:
    """Attach labels and groups from Metadata.AWS::CloudFormation::Interface."""
    if not isinstance(metadata, dict):
        return
    interface = metadata.get('AWS::CloudFormation::Interface')
    if not isinstance(interface, dict):
        return

    where = 'Metadata.AWS::CloudFormation::Interface'
    groups = interface.get('ParameterGroups') or []
    if not isinstance(groups, list):
        raise ParseError(f"{where}.ParameterGroups must be a list")
    for i, group in enumerate(groups):
        if not isinstance(group, dict):
            raise ParseError(f"{where}.ParameterGroups[{i}] must be a mapping")
        label = group.get('Label') or {}
        if not isinstance(label, dict):
            raise ParseError(f"{where}.ParameterGroups[{i}].Label must be a mapping with 'default'")
        names = group.get('Parameters') or []
        if not isinstance(names, list):
            raise ParseError(f"{where}.ParameterGroups[{i}].Parameters must be a list")
        for name in names:
            if name in parameters:
                parameters[name].group = label.get('default')

    labels = interface.get('ParameterLabels') or {}
    if not isinstance(labels, dict):
        raise ParseError(f"{where}.ParameterLabels must be a mapping")
    for name, label in labels.items():
        if name in parameters and isinstance(label, dict):
            parameters[name].label = label.get('default')


class _IntrinsicSafeLoader(yaml.SafeLoader):
    """SafeLoader that expands short-form intrinsic tags and keeps dates as strings."""


# Dates such as 2010-09-09 must stay strings
_IntrinsicSafeLoader.yaml_implicit_resolvers = {
    key: [r for r in resolvers if r[0] != 'tag:yaml.org,2002:timestamp']
    for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> dict:
    """Expand !Tag value into its long form ({'Fn::Tag': value} or {'Ref': value})."""
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix in ('Ref', 'Condition'):
        return {tag_suffix: value}
    if tag_suffix == 'GetAtt' and isinstance(value, str):
        value = value.split('.', 1)
    return {f'Fn::{tag_suffix}': value}


_IntrinsicSafeLoader.add_multi_constructor('!', _construct_intrinsic)


def parse_template_text(text: str, source: str = '<string>') -> Any:
    """Parse template text as JSON, falling back to YAML.

    Raises:
        ParseError: If the text is neither valid JSON nor valid YAML
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return yaml.load(text, Loader=_IntrinsicSafeLoader)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid template {source}: {e}")


class TemplateLoader:
    """Loads templates from files."""

    def load_file(self, path: Path) -> Template:
        """Load template from specific file path.

        Args:
            path: Path to a JSON or YAML template

        Returns:
            Template instance

        Raises:
            ParseError: If file not found or invalid
        """
        if not path.exists():
            raise ParseError(f"Template file not found: {path}")

        with open(path, encoding='utf-8') as f:
            data = parse_template_text(f.read(), str(path))

        return Template.from_dict(data, source_path=path)


def load_template(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Template:
    """Load template from a file or inline JSON.

    Priority:
    1. json_str - Inline JSON/YAML text
    2. file_path - Template file

    Raises:
        ParseError: If no source is given or the template is invalid
        TemplateReferenceError: On dangling references
    """
    if json_str:
        return Template.from_dict(parse_template_text(json_str))
    if file_path:
        return TemplateLoader().load_file(Path(file_path))
    raise ParseError("No template source given")

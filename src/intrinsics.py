"""Intrinsic function handling for stack templates.

Templates express values with CloudFormation-style intrinsic functions
(Ref, Fn::GetAtt, Fn::Sub, Fn::Join, Fn::Split, Fn::Select, Fn::If,
Fn::Equals, Fn::Not, Fn::And, Fn::Or, Fn::Base64, Condition).

Evaluation happens in two passes:
- plan pass: parameters, pseudo parameters and conditions are substituted.
  References to resources stay symbolic (their long-form intrinsic dict),
  and any function with a symbolic operand is kept with its operands
  partially evaluated.
- apply pass: the remaining resource references are materialised through a
  resolver callback (physical ids and attributes from stack state).
"""

import base64
import logging
import re
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

# Long-form names of supported intrinsic functions
FUNCTION_NAMES = frozenset({
    'Ref',
    'Condition',
    'Fn::GetAtt',
    'Fn::Sub',
    'Fn::Join',
    'Fn::Split',
    'Fn::Select',
    'Fn::If',
    'Fn::Equals',
    'Fn::Not',
    'Fn::And',
    'Fn::Or',
    'Fn::Base64',
})

# Functions allowed inside Conditions
CONDITION_FUNCTIONS = frozenset({'Fn::Equals', 'Fn::Not', 'Fn::And', 'Fn::Or', 'Condition'})

NO_VALUE_REF = 'AWS::NoValue'

PSEUDO_PARAMETERS = frozenset({
    'AWS::StackName',
    'AWS::StackId',
    'AWS::Region',
    'AWS::AccountId',
    'AWS::Partition',
    'AWS::URLSuffix',
    NO_VALUE_REF,
})

# ${Name}, ${Name.Attr} and ${!Literal}
_SUB_VARIABLE = re.compile(r'\$\{(!?)([^}]*)\}')


class TemplateError(Exception):
    """Base class for template errors."""


class ParseError(TemplateError):
    """Malformed template structure or intrinsic function usage."""


class TemplateReferenceError(TemplateError):
    """A reference to an undefined (or excluded) logical name."""


class _NoValue:
    """Marker for AWS::NoValue: the surrounding key or list item is removed."""

    def __repr__(self) -> str:
        return 'NoValue'


NO_VALUE = _NoValue()


def pseudo_parameters(stack_name: str, region: str, account_id: str) -> dict[str, str]:
    """Build pseudo parameter values for a stack."""
    partition = 'aws-cn' if region.startswith('cn-') else 'aws'
    url_suffix = 'amazonaws.com.cn' if partition == 'aws-cn' else 'amazonaws.com'
    return {
        'AWS::StackName': stack_name,
        'AWS::StackId': f'arn:{partition}:cloudformation:{region}:{account_id}:stack/{stack_name}',
        'AWS::Region': region,
        'AWS::AccountId': account_id,
        'AWS::Partition': partition,
        'AWS::URLSuffix': url_suffix,
    }


def function_name(value: Any) -> Optional[str]:
    """Return the intrinsic function name if value is an intrinsic node."""
    if isinstance(value, dict) and len(value) == 1:
        key = next(iter(value))
        if key in FUNCTION_NAMES:
            return key
    return None


def is_symbolic(value: Any) -> bool:
    """True if value still contains an unresolved intrinsic function."""
    if function_name(value) is not None:
        return True
    if isinstance(value, dict):
        return any(is_symbolic(v) for v in value.values())
    if isinstance(value, list):
        return any(is_symbolic(v) for v in value)
    return False


def _split_getatt(args: Any, path: str) -> tuple[Any, Any]:
    """Normalise Fn::GetAtt arguments to (logical_name, attribute)."""
    if isinstance(args, str):
        if '.' not in args:
            raise ParseError(f"{path}: Fn::GetAtt requires 'Name.Attribute', got '{args}'")
        name, attr = args.split('.', 1)
        return name, attr
    if isinstance(args, list) and len(args) == 2 and isinstance(args[0], str):
        return args[0], args[1]
    raise ParseError(f"{path}: Fn::GetAtt requires [LogicalName, Attribute]")


def _sub_arguments(args: Any, path: str) -> tuple[str, dict]:
    """Normalise Fn::Sub arguments to (template_string, variable_map)."""
    if isinstance(args, str):
        return args, {}
    if (isinstance(args, list) and len(args) == 2
            and isinstance(args[0], str) and isinstance(args[1], dict)):
        return args[0], args[1]
    raise ParseError(f"{path}: Fn::Sub requires a string or [String, {{Var: Value}}]")


def _require_list(fn: str, args: Any, length: Optional[int], path: str) -> list:
    if not isinstance(args, list) or (length is not None and len(args) != length):
        expected = f"a list of {length} items" if length is not None else "a list"
        raise ParseError(f"{path}: {fn} requires {expected}")
    return args


def iter_references(value: Any, path: str = '') -> Iterator[tuple[str, Optional[str], str]]:
    """Walk a value tree and yield every reference it makes.

    Also checks the argument shape of each intrinsic function.

    Yields:
        (logical_name, attribute_or_None, kind) where kind is 'Ref',
        'GetAtt', 'Sub' or 'Condition'.

    Raises:
        ParseError: On malformed intrinsic arguments
    """
    fn = function_name(value)
    if fn is None:
        if isinstance(value, dict):
            for key, item in value.items():
                yield from iter_references(item, f'{path}.{key}' if path else str(key))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                yield from iter_references(item, f'{path}[{i}]')
        return

    args = value[fn]
    where = f'{path}.{fn}' if path else fn

    if fn == 'Ref':
        if not isinstance(args, str):
            raise ParseError(f"{where}: Ref requires a logical name string")
        yield args, None, 'Ref'
    elif fn == 'Condition':
        if not isinstance(args, str):
            raise ParseError(f"{where}: Condition requires a condition name string")
        yield args, None, 'Condition'
    elif fn == 'Fn::GetAtt':
        name, attr = _split_getatt(args, where)
        if not isinstance(attr, str):
            yield from iter_references(attr, where)
            attr = None
        yield name, attr, 'GetAtt'
    elif fn == 'Fn::Sub':
        template, variables = _sub_arguments(args, where)
        yield from iter_references(variables, where)
        for literal, var in _SUB_VARIABLE.findall(template):
            if literal or var in variables:
                continue
            if '.' in var and not var.startswith('AWS::'):
                name, attr = var.split('.', 1)
                yield name, attr, 'Sub'
            else:
                yield var, None, 'Sub'
    elif fn == 'Fn::If':
        items = _require_list(fn, args, 3, where)
        if not isinstance(items[0], str):
            raise ParseError(f"{where}: Fn::If requires a condition name as first item")
        yield items[0], None, 'Condition'
        yield from iter_references(items[1], f'{where}[1]')
        yield from iter_references(items[2], f'{where}[2]')
    elif fn in ('Fn::Join', 'Fn::Split'):
        items = _require_list(fn, args, 2, where)
        if not isinstance(items[0], str):
            raise ParseError(f"{where}: {fn} requires a delimiter string as first item")
        yield from iter_references(items[1], f'{where}[1]')
    elif fn == 'Fn::Select':
        items = _require_list(fn, args, 2, where)
        yield from iter_references(items, where)
    elif fn == 'Fn::Equals':
        items = _require_list(fn, args, 2, where)
        yield from iter_references(items, where)
    elif fn == 'Fn::Not':
        items = _require_list(fn, args, 1, where)
        yield from iter_references(items, where)
    elif fn in ('Fn::And', 'Fn::Or'):
        items = _require_list(fn, args, None, where)
        if not 2 <= len(items) <= 10:
            raise ParseError(f"{where}: {fn} requires between 2 and 10 conditions")
        yield from iter_references(items, where)
    elif fn == 'Fn::Base64':
        yield from iter_references(args, where)


class Evaluator:
    """Evaluates intrinsic functions against parameters, conditions and resources.

    Attributes:
        parameters: Resolved parameter values
        pseudo: Pseudo parameter values (AWS::Region, ...)
        conditions: Mapping of condition name -> bool
        resources: Logical names of resources included in the stack
        excluded: Logical names of resources excluded by a false condition
        resolver: Callback (name, attribute) -> value for the apply pass.
                  None keeps resource references symbolic (plan pass).
    """

    def __init__(
        self,
        parameters: dict,
        pseudo: dict,
        conditions: Any,
        resources: frozenset = frozenset(),
        excluded: frozenset = frozenset(),
        resolver: Optional[Callable[[str, Optional[str]], Any]] = None,
    ):
        self.parameters = parameters
        self.pseudo = pseudo
        self.conditions = conditions
        self.resources = resources
        self.excluded = excluded
        self.resolver = resolver

    def evaluate(self, value: Any, path: str = '') -> Any:
        """Evaluate a value tree. AWS::NoValue entries are dropped."""
        fn = function_name(value)
        if fn is not None:
            return self._evaluate_function(fn, value[fn], path or fn)
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                evaluated = self.evaluate(item, f'{path}.{key}' if path else str(key))
                if evaluated is not NO_VALUE:
                    result[key] = evaluated
            return result
        if isinstance(value, list):
            items = [self.evaluate(item, f'{path}[{i}]') for i, item in enumerate(value)]
            return [item for item in items if item is not NO_VALUE]
        return value

    def evaluate_condition(self, expression: Any, path: str = '') -> bool:
        """Evaluate a condition expression to a bool."""
        result = self.evaluate(expression, path)
        if not isinstance(result, bool):
            raise ParseError(f"{path}: condition did not evaluate to a boolean (got {result!r})")
        return result

    def _condition(self, name: str, path: str) -> bool:
        try:
            return bool(self.conditions[name])
        except KeyError:
            raise ParseError(f"{path}: unknown condition '{name}'") from None

    def _resource(self, name: str, attr: Optional[str], path: str) -> Any:
        if name in self.excluded:
            raise TemplateReferenceError(
                f"{path}: references resource '{name}' which is excluded by its condition"
            )
        if name not in self.resources:
            raise TemplateReferenceError(f"{path}: references undefined resource '{name}'")
        if self.resolver is None:
            if attr is None:
                return {'Ref': name}
            return {'Fn::GetAtt': [name, attr]}
        return self.resolver(name, attr)

    def _ref(self, name: str, path: str) -> Any:
        if name == NO_VALUE_REF:
            return NO_VALUE
        if name in self.parameters:
            return self.parameters[name]
        if name in self.pseudo:
            return self.pseudo[name]
        return self._resource(name, None, path)

    def _sub_variable(self, var: str, path: str) -> Any:
        if var in self.parameters or var in self.pseudo:
            return self._ref(var, path)
        if '.' in var:
            name, attr = var.split('.', 1)
            return self._resource(name, attr, path)
        return self._resource(var, None, path)

    def _evaluate_function(self, fn: str, args: Any, path: str) -> Any:
        if fn == 'Ref':
            if not isinstance(args, str):
                raise ParseError(f"{path}: Ref requires a logical name string")
            return self._ref(args, path)

        if fn == 'Condition':
            return self._condition(args, path)

        if fn == 'Fn::GetAtt':
            name, attr = _split_getatt(args, path)
            attr = self.evaluate(attr, path)
            if is_symbolic(attr):
                raise ParseError(f"{path}: Fn::GetAtt attribute name must not depend on a resource")
            return self._resource(name, str(attr), path)

        if fn == 'Fn::If':
            condition, when_true, when_false = _require_list(fn, args, 3, path)
            if self._condition(condition, path):
                return self.evaluate(when_true, f'{path}[1]')
            return self.evaluate(when_false, f'{path}[2]')

        if fn == 'Fn::Sub':
            return self._sub(args, path)

        if fn == 'Fn::Join':
            delimiter, items = _require_list(fn, args, 2, path)
            items = self.evaluate(items, f'{path}[1]')
            if is_symbolic(items):
                return {fn: [delimiter, items]}
            if not isinstance(items, list):
                raise ParseError(f"{path}: Fn::Join requires a list of values")
            return delimiter.join(_to_text(item) for item in items)

        if fn == 'Fn::Split':
            delimiter, source = _require_list(fn, args, 2, path)
            source = self.evaluate(source, f'{path}[1]')
            if is_symbolic(source):
                return {fn: [delimiter, source]}
            if not isinstance(source, str):
                raise ParseError(f"{path}: Fn::Split requires a string source")
            return source.split(delimiter)

        if fn == 'Fn::Select':
            index, items = _require_list(fn, args, 2, path)
            index = self.evaluate(index, f'{path}[0]')
            items = self.evaluate(items, f'{path}[1]')
            if is_symbolic(index) or is_symbolic(items):
                return {fn: [index, items]}
            try:
                position = int(index)
            except (TypeError, ValueError):
                raise ParseError(f"{path}: Fn::Select index must be an integer") from None
            if not isinstance(items, list) or not 0 <= position < len(items):
                raise ParseError(f"{path}: Fn::Select index {position} out of range")
            return items[position]

        if fn == 'Fn::Base64':
            content = self.evaluate(args, path)
            if is_symbolic(content):
                return {fn: content}
            return base64.b64encode(_to_text(content).encode('utf-8')).decode('ascii')

        if fn == 'Fn::Equals':
            left, right = _require_list(fn, args, 2, path)
            left = self.evaluate(left, f'{path}[0]')
            right = self.evaluate(right, f'{path}[1]')
            if is_symbolic(left) or is_symbolic(right):
                raise ParseError(f"{path}: Fn::Equals operands must not depend on resources")
            return _to_text(left) == _to_text(right)

        if fn == 'Fn::Not':
            (operand,) = _require_list(fn, args, 1, path)
            return not self.evaluate_condition(operand, f'{path}[0]')

        if fn == 'Fn::And':
            operands = _require_list(fn, args, None, path)
            return all(self.evaluate_condition(o, f'{path}[{i}]') for i, o in enumerate(operands))

        if fn == 'Fn::Or':
            operands = _require_list(fn, args, None, path)
            return any(self.evaluate_condition(o, f'{path}[{i}]') for i, o in enumerate(operands))

        raise ParseError(f"{path}: unsupported intrinsic function '{fn}'")

    def _sub(self, args: Any, path: str) -> Any:
        template, variables = _sub_arguments(args, path)
        values = {key: self.evaluate(val, f'{path}.{key}') for key, val in variables.items()}
        pending: dict[str, Any] = {}

        def replace(match: re.Match) -> str:
            literal, var = match.group(1), match.group(2)
            if literal:
                return match.group(0)
            if var in values:
                value = values[var]
                if is_symbolic(value):
                    pending[var] = value
                    return match.group(0)
                return _to_text(value)
            value = self._sub_variable(var, path)
            if is_symbolic(value):
                return match.group(0)
            return _to_text(value)

        text = _SUB_VARIABLE.sub(replace, template)
        if pending:
            return {'Fn::Sub': [text, pending]}
        if _has_unresolved_variable(text):
            return {'Fn::Sub': text}
        # ${!Literal} renders as ${Literal}
        return _SUB_VARIABLE.sub(lambda m: '${' + m.group(2) + '}', text)


def _has_unresolved_variable(text: str) -> bool:
    return any(not literal for literal, _ in _SUB_VARIABLE.findall(text))


def _to_text(value: Any) -> str:
    """Render a scalar the way templates do (booleans lower-case, lists comma-joined)."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, list):
        return ','.join(_to_text(v) for v in value)
    return str(value)


class _LazyConditions:
    """Condition table evaluated on first access, each condition exactly once."""

    def __init__(self, definitions: dict, evaluator_factory: Callable[['_LazyConditions'], Evaluator]):
        self._definitions = definitions
        self._values: dict[str, bool] = {}
        self._in_progress: set[str] = set()
        self._evaluator = evaluator_factory(self)

    def __getitem__(self, name: str) -> bool:
        if name in self._values:
            return self._values[name]
        if name not in self._definitions:
            raise KeyError(name)
        if name in self._in_progress:
            raise ParseError(f"Conditions: circular reference involving '{name}'")
        self._in_progress.add(name)
        try:
            value = self._evaluator.evaluate_condition(self._definitions[name], f'Conditions.{name}')
        finally:
            self._in_progress.discard(name)
        self._values[name] = value
        logger.debug(f"Condition '{name}' evaluated to {value}")
        return value

    def resolve_all(self) -> dict[str, bool]:
        for name in self._definitions:
            self[name]
        return dict(self._values)


def evaluate_conditions(definitions: dict, parameters: dict, pseudo: dict) -> dict[str, bool]:
    """Evaluate every named condition once.

    Args:
        definitions: Mapping of condition name -> expression
        parameters: Resolved parameter values
        pseudo: Pseudo parameter values

    Returns:
        Mapping of condition name -> bool

    Raises:
        ParseError: On malformed or circular conditions
    """
    table = _LazyConditions(
        definitions,
        lambda conditions: Evaluator(parameters, pseudo, conditions),
    )
    return table.resolve_all()

"""
Migration recipes: specialized instructions for common migration scenarios.

A recipe applies when the source and target dialects match its route and its
trigger pattern occurs in the chunk code. The first matching recipe wins, in
table order, so narrower recipes are listed before broader ones.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, List, Optional

from src.core.models import Dialect

_JS_FAMILY = frozenset({
    Dialect.JAVASCRIPT,
    Dialect.TYPESCRIPT,
    Dialect.REACT_JS,
    Dialect.REACT_TS,
    Dialect.VUE,
    Dialect.JQUERY,
    Dialect.ANGULARJS,
    Dialect.ANGULAR,
})
_REACT = frozenset({Dialect.REACT_JS, Dialect.REACT_TS})
_TS_TARGETS = frozenset({Dialect.TYPESCRIPT, Dialect.REACT_TS, Dialect.ANGULAR})
_PY_TARGETS = frozenset({Dialect.PYTHON3})


@dataclass(frozen=True)
class Recipe:
    key: str
    name: str
    sources: FrozenSet[Dialect]
    targets: FrozenSet[Dialect]
    pattern: "re.Pattern[str]"
    instructions: str

    def applies(self, code: str, source: Dialect, target: Dialect) -> bool:
        return source in self.sources and target in self.targets and bool(self.pattern.search(code))


RECIPES: List[Recipe] = [
    Recipe(
        key="react-useeffect-to-angular",
        name="React useEffect to Angular lifecycle",
        sources=_REACT,
        targets=frozenset({Dialect.ANGULAR}),
        pattern=re.compile(r"useEffect\s*\("),
        instructions=(
            "- useEffect(() => {}, []) becomes ngOnInit()\n"
            "- useEffect with dependencies becomes ngOnChanges() or an input setter\n"
            "- a returned cleanup function moves to ngOnDestroy()\n"
            "- React refs become @ViewChild / ElementRef"
        ),
    ),
    Recipe(
        key="react-state-to-angular",
        name="React state to Angular properties",
        sources=_REACT,
        targets=frozenset({Dialect.ANGULAR}),
        pattern=re.compile(r"useState\s*\("),
        instructions=(
            "- useState pairs become component properties\n"
            "- setter calls become direct property assignment\n"
            "- rely on Angular change detection instead of re-rendering"
        ),
    ),
    Recipe(
        key="react-class-to-hooks",
        name="React class component to function component",
        sources=_REACT,
        targets=_REACT,
        pattern=re.compile(r"extends\s+(React\.)?(Pure)?Component\b"),
        instructions=(
            "- convert the class to a function component\n"
            "- this.state / this.setState become useState hooks\n"
            "- componentDidMount / componentDidUpdate / componentWillUnmount become useEffect\n"
            "- bound methods become plain inner functions or useCallback"
        ),
    ),
    Recipe(
        key="vue-component-to-react",
        name="Vue component to React",
        sources=frozenset({Dialect.VUE}),
        targets=_REACT,
        pattern=re.compile(r"export\s+default\s*\{|defineComponent\s*\("),
        instructions=(
            "- data() becomes useState hooks and computed becomes useMemo\n"
            "- methods become functions inside the component\n"
            "- lifecycle hooks become useEffect\n"
            "- props become a typed props argument and emitted events become callback props"
        ),
    ),
    Recipe(
        key="angularjs-controller-to-angular",
        name="AngularJS controller to Angular component",
        sources=frozenset({Dialect.ANGULARJS}),
        targets=frozenset({Dialect.ANGULAR, Dialect.TYPESCRIPT}),
        pattern=re.compile(r"\.controller\s*\(|\$scope"),
        instructions=(
            "- the controller becomes an @Component class\n"
            "- $scope fields become class properties and $scope functions become methods\n"
            "- $http becomes HttpClient injected through the constructor\n"
            "- $watch becomes ngOnChanges or an RxJS stream"
        ),
    ),
    Recipe(
        key="jquery-dom-to-react",
        name="jQuery DOM manipulation to React",
        sources=frozenset({Dialect.JQUERY}),
        targets=_REACT,
        pattern=re.compile(r"\$\(\s*['\"]|\$\.ajax\s*\(|\.on\s*\(\s*['\"]"),
        instructions=(
            "- DOM reads and writes become state and JSX\n"
            "- $(...).on handlers become JSX event props\n"
            "- $.ajax becomes fetch inside useEffect or an event handler"
        ),
    ),
    Recipe(
        key="jquery-dom-to-vanilla",
        name="jQuery DOM manipulation to standard DOM APIs",
        sources=frozenset({Dialect.JQUERY}),
        targets=frozenset({Dialect.JAVASCRIPT, Dialect.TYPESCRIPT}),
        pattern=re.compile(r"\$\(|\$\.\w+\s*\("),
        instructions=(
            "- $(selector) becomes document.querySelector / querySelectorAll\n"
            "- .on / .off become addEventListener / removeEventListener\n"
            "- $.ajax becomes fetch with async/await"
        ),
    ),
    Recipe(
        key="express-route-to-python",
        name="Express route to Python handler",
        sources=_JS_FAMILY,
        targets=_PY_TARGETS,
        pattern=re.compile(r"(app|router)\.(get|post|put|delete|patch)\s*\("),
        instructions=(
            "- each route becomes a decorated handler function\n"
            "- req.params / req.query / req.body become typed handler arguments\n"
            "- res.status().json() becomes a returned response with an explicit status"
        ),
    ),
    Recipe(
        key="callbacks-to-async",
        name="Callbacks to async/await",
        sources=_JS_FAMILY,
        targets=_JS_FAMILY,
        pattern=re.compile(r"function\s*\(\s*err\b|\(\s*err\s*,|\.then\s*\("),
        instructions=(
            "- node-style callbacks and promise chains become async functions with await\n"
            "- error-first branches become try/catch\n"
            "- keep the exported signature unless the request asks for a promise API"
        ),
    ),
    Recipe(
        key="js-class-to-ts",
        name="JavaScript class to TypeScript",
        sources=frozenset({Dialect.JAVASCRIPT, Dialect.REACT_JS, Dialect.JQUERY}),
        targets=_TS_TARGETS,
        pattern=re.compile(r"\bclass\s+\w+"),
        instructions=(
            "- declare every property with a type and an access modifier\n"
            "- annotate method parameters and return types\n"
            "- extract object shapes into interfaces"
        ),
    ),
    Recipe(
        key="js-function-to-ts",
        name="JavaScript function to TypeScript",
        sources=frozenset({Dialect.JAVASCRIPT, Dialect.REACT_JS, Dialect.JQUERY}),
        targets=_TS_TARGETS,
        pattern=re.compile(r"\bfunction\b|=>"),
        instructions=(
            "- annotate every parameter and the return type\n"
            "- prefer specific types over any\n"
            "- optional parameters use the ? syntax"
        ),
    ),
    Recipe(
        key="python-function-to-java",
        name="Python function to Java method",
        sources=frozenset({Dialect.PYTHON2, Dialect.PYTHON3}),
        targets=frozenset({Dialect.JAVA, Dialect.KOTLIN}),
        pattern=re.compile(r"\bdef\s+\w+\s*\("),
        instructions=(
            "- add static types for parameters and return values\n"
            "- list comprehensions become streams, dicts become Map\n"
            "- None becomes null and exceptions map to Java exception types"
        ),
    ),
    Recipe(
        key="python2-print-to-python3",
        name="Python 2 print statement to print()",
        sources=frozenset({Dialect.PYTHON2}),
        targets=_PY_TARGETS,
        pattern=re.compile(r"^\s*print\s+[^(\s]", re.MULTILINE),
        instructions=(
            "- print statements become print() calls\n"
            "- a trailing comma becomes end=' '\n"
            "- print >>f, x becomes print(x, file=f)"
        ),
    ),
    Recipe(
        key="python2-unicode-to-python3",
        name="Python 2 unicode handling to Python 3 str",
        sources=frozenset({Dialect.PYTHON2}),
        targets=_PY_TARGETS,
        pattern=re.compile(r"\bunicode\s*\(|\bu['\"]|\.iteritems\s*\(|\bxrange\s*\("),
        instructions=(
            "- unicode() becomes str() and u'' prefixes are dropped\n"
            "- iteritems / xrange become items / range\n"
            "- integer division that relied on Python 2 semantics uses //"
        ),
    ),
]


def identify_recipe(code: str, source: Dialect, target: Dialect) -> Optional[Recipe]:
    for recipe in RECIPES:
        if recipe.applies(code, source, target):
            return recipe
    return None


def available_recipes(source: Dialect, target: Dialect) -> List[Recipe]:
    return [r for r in RECIPES if source in r.sources and target in r.targets]

"""Shared pytest fixtures for the branchrun test suite.

Provides:
- An empty StepTree and a builder for steps, function calls, hooks and branches
- BranchRunner factories with per-test engine options
"""

import os

import pytest

# Override settings BEFORE any engine imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from branchrun.app.config import EngineOptions  # noqa: E402
from branchrun.workflow.branch import Branch  # noqa: E402
from branchrun.workflow.branch_runner import BranchRunner  # noqa: E402
from branchrun.workflow.step import Step, StepNode, VarBeingSet  # noqa: E402
from branchrun.workflow.tree import StepTree  # noqa: E402


class TreeBuilder:
    """Builds step nodes, steps and branches on a StepTree.

    Every node gets its own line in "test.txt", ten lines apart, so a code
    block's lines never overlap the next step's.
    """

    def __init__(self, tree: StepTree, filename: str = "test.txt"):
        self.tree = tree
        self.filename = filename
        self._line = 0

    def _node(self, text: str, **fields) -> StepNode:
        self._line += 10
        fields.setdefault("filename", self.filename)
        fields.setdefault("line_number", self._line)
        return self.tree.new_step_node(text, **fields)

    def step(self, text: str, code: str = None, level: int = 0, sets=None, **fields) -> Step:
        """A step, optionally with a code block and {var}=... assignments.

        sets: list of (name, value, is_local) tuples
        """
        vars_being_set = [VarBeingSet(name, value, is_local) for name, value, is_local in (sets or [])]
        node = self._node(text, code_block=code, vars_being_set=vars_being_set, **fields)
        return Step(id=node.id, level=level)

    def function(self, text: str, code: str = None, **fields) -> StepNode:
        """A function declaration."""
        return self._node(text, code_block=code, is_function_declaration=True, **fields)

    def call(self, text: str, declaration: StepNode, level: int = 0, sets=None, **fields) -> Step:
        """A call to a function declaration."""
        vars_being_set = [VarBeingSet(name, value, is_local) for name, value, is_local in (sets or [])]
        node = self._node(text, is_function_call=True, vars_being_set=vars_being_set, **fields)
        return Step(id=node.id, fid=declaration.id, level=level)

    def hook(self, code: str, text: str = "Hook", **fields) -> Step:
        node = self._node(text, code_block=code, is_hook=True, **fields)
        return Step(id=node.id)

    def branch(self, *steps: Step, add: bool = True, **hooks) -> Branch:
        """A branch of the given steps; hooks given as before_every_step=[...] etc."""
        branch = Branch()
        for step in steps:
            branch.append(step, self.tree.step_node_index)
        for kind, hook_steps in hooks.items():
            setattr(branch, kind, list(hook_steps))
        if add:
            self.tree.add_branch(branch)
        else:
            branch.compute_hash(self.tree.step_node_index)
        return branch


@pytest.fixture
def tree():
    """An empty step tree."""
    return StepTree()


@pytest.fixture
def builder(tree):
    return TreeBuilder(tree)


@pytest.fixture
def make_runner(tree):
    """Factory for a BranchRunner over the test tree, taking engine option overrides."""

    def _make(persistent=None, **options) -> BranchRunner:
        return BranchRunner(tree, persistent=persistent, options=EngineOptions(**options))

    return _make


@pytest.fixture
def runner(make_runner):
    """A BranchRunner with default options."""
    return make_runner()

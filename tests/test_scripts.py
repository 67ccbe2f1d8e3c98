"""
Tests for the build script generator.

Tests cover:
- Policy table per project type
- Configured commands overriding defaults
- Configuration errors
- Clone, cache and output sections
- Determinism
"""
import shutil
import subprocess

import pytest

from buildforge.core.cache import CacheLane
from buildforge.core.errors import ConfigurationError
from buildforge.core.scripts import (
    CLONE_FAILED_EXIT_CODE,
    CLONE_TIMEOUT_EXIT_CODE,
    SUCCESS_SENTINEL,
    generate_script,
    plan_build,
)
from buildforge.schemas.build import (
    BuildConfig,
    FrontendFramework,
    NodeBackend,
    NodeFrontend,
    NodeTool,
    PythonApp,
    PythonFramework,
    PythonTool,
    StaticSite,
    Unrecognized,
)

from conftest import COMMIT

REPO = "https://github.com/acme/app.git"


def render(project_type, config=None, **kwargs) -> str:
    return generate_script(project_type, config or BuildConfig(), REPO, "main", COMMIT, **kwargs)


# =============================================================================
# Policy table
# =============================================================================

class TestPolicyTable:
    """Tests for install/build/output resolution per project type."""

    def test_static_site_has_no_commands(self):
        """Test that static sites copy the source without install or build."""
        plan = plan_build(StaticSite(), BuildConfig())
        assert plan.install_commands == ()
        assert plan.build_commands == ()
        assert plan.output_directory is None
        assert ".git" in plan.exclude_from_output
        assert plan.cache_lanes == ()

    @pytest.mark.parametrize("framework,expected", [
        (FrontendFramework.REACT, "build"),
        (FrontendFramework.VUE, "dist"),
        (FrontendFramework.ANGULAR, "dist"),
        (FrontendFramework.NEXTJS, ".next"),
    ])
    def test_frontend_output_directory(self, framework, expected):
        """Test conventional output directories per framework."""
        plan = plan_build(NodeFrontend(framework=framework), BuildConfig())
        assert plan.output_directory == expected

    def test_configured_output_directory_wins(self):
        """Test that a configured output directory overrides the convention."""
        plan = plan_build(
            NodeFrontend(framework=FrontendFramework.REACT),
            BuildConfig(output_directory="public/"),
        )
        assert plan.output_directory == "public"

    @pytest.mark.parametrize("tool,install,build", [
        (NodeTool.NPM, "npm install", "npm run build"),
        (NodeTool.YARN, "yarn install", "yarn build"),
        (NodeTool.PNPM, "pnpm install", "pnpm build"),
    ])
    def test_frontend_tool_commands(self, tool, install, build):
        """Test default install and build commands per package manager."""
        plan = plan_build(NodeFrontend(framework=FrontendFramework.VUE, build_tool=tool), BuildConfig())
        assert plan.install_commands == (install,)
        assert plan.build_commands == (build,)
        assert plan.cache_lanes == (CacheLane.NODE_MODULES,)

    def test_configured_commands_override_defaults(self):
        """Test that configured install/build commands are used verbatim."""
        config = BuildConfig(install_command="npm ci", build_command="npm run build:prod")
        plan = plan_build(NodeFrontend(framework=FrontendFramework.REACT), config)
        assert plan.install_commands == ("npm ci",)
        assert plan.build_commands == ("npm run build:prod",)

    def test_node_backend_production_install_and_dockerfile(self):
        """Test that backends install production deps and ship a Dockerfile."""
        plan = plan_build(NodeBackend(build_tool=NodeTool.PNPM), BuildConfig())
        assert plan.install_commands == ("pnpm install --prod",)
        assert plan.build_commands == ()
        assert "node_modules" in plan.exclude_from_output
        assert plan.container_manifest.startswith("FROM node:18-alpine")
        assert 'CMD ["pnpm", "start"]' in plan.container_manifest

    @pytest.mark.parametrize("tool,install", [
        (PythonTool.PIP, "pip install -r requirements.txt"),
        (PythonTool.PIPENV, "pipenv install --deploy --system"),
        (PythonTool.POETRY, "poetry install --no-root --no-interaction"),
    ])
    def test_python_install_commands(self, tool, install):
        """Test install command per Python tool."""
        plan = plan_build(PythonApp(framework=PythonFramework.FLASK, build_tool=tool), BuildConfig())
        assert install in plan.install_commands[0]
        assert plan.cache_lanes == (CacheLane.PIP,)

    def test_django_collects_static_and_uses_wsgi(self):
        """Test Django build step and default gunicorn entrypoint."""
        plan = plan_build(PythonApp(framework=PythonFramework.DJANGO), BuildConfig())
        assert plan.build_commands == ("python manage.py collectstatic --noinput",)
        assert "wsgi:application" in plan.container_manifest

    def test_flask_default_start(self):
        """Test Flask default start command."""
        plan = plan_build(PythonApp(framework=PythonFramework.FLASK), BuildConfig())
        assert "app:app" in plan.container_manifest
        assert plan.build_commands == ()

    def test_python_explicit_start_command(self):
        """Test that an explicit start command becomes the image CMD."""
        plan = plan_build(
            PythonApp(framework=PythonFramework.PLAIN),
            BuildConfig(start_command="python server.py --port 8000"),
        )
        assert 'CMD ["python", "server.py", "--port", "8000"]' in plan.container_manifest

    def test_plain_python_without_start_command_fails(self):
        """Test that plain Python projects need a start command."""
        with pytest.raises(ConfigurationError) as exc_info:
            plan_build(PythonApp(framework=PythonFramework.PLAIN), BuildConfig())
        assert exc_info.value.retryable is False
        assert exc_info.value.reason == "configuration"

    def test_unrecognized_requires_output_directory(self):
        """Test that unrecognized projects must name an output directory."""
        with pytest.raises(ConfigurationError):
            plan_build(Unrecognized(language="go"), BuildConfig(build_command="make"))

    def test_unrecognized_uses_configured_commands(self):
        """Test that unrecognized projects run only what is configured."""
        plan = plan_build(
            Unrecognized(language="go"),
            BuildConfig(build_command="make dist", output_directory="dist"),
        )
        assert plan.install_commands == ()
        assert plan.build_commands == ("make dist",)
        assert plan.output_directory == "dist"


# =============================================================================
# Rendered script
# =============================================================================

class TestGeneratedScript:
    """Tests for the rendered shell script."""

    def test_script_is_deterministic(self):
        """Test that identical inputs render identical scripts."""
        project = NodeFrontend(framework=FrontendFramework.REACT)
        assert render(project) == render(project)

    def test_script_header_and_sentinel(self):
        """Test strict mode and the success sentinel as the final line."""
        script = render(StaticSite())
        assert script.startswith("#!/bin/sh\n")
        assert "set -eu" in script
        assert script.rstrip("\n").splitlines()[-1] == f'echo "{SUCCESS_SENTINEL}"'

    def test_clone_exact_commit_with_fallback(self):
        """Test shallow clone of the branch and fetch fallback for the commit."""
        script = render(StaticSite())
        assert "git clone --quiet --depth 1 --branch main" in script
        assert REPO in script
        assert f"git checkout --quiet {COMMIT}" in script
        assert f"git fetch --quiet --depth 1 origin {COMMIT}" in script
        assert "git checkout --quiet FETCH_HEAD" in script

    def test_clone_timeout_and_exit_codes(self):
        """Test that clone failures map to dedicated exit codes."""
        script = render(StaticSite(), clone_timeout_s=45)
        assert "timeout 45 git clone" in script
        assert f"exit {CLONE_TIMEOUT_EXIT_CODE}" in script
        assert f"exit {CLONE_FAILED_EXIT_CODE}" in script

    @pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
    @pytest.mark.parametrize("rc,expected", [(124, CLONE_TIMEOUT_EXIT_CODE), (143, CLONE_TIMEOUT_EXIT_CODE), (128, 0)])
    def test_timeout_exit_statuses(self, rc, expected):
        """Test that both coreutils and busybox timeout statuses count as a clone timeout."""
        script = render(StaticSite())
        check = next(line for line in script.splitlines() if "clone timed out" in line)
        result = subprocess.run(["sh", "-c", f"rc={rc}\n{check}\nexit 0"], capture_output=True, text=True)
        assert result.returncode == expected

    def test_stage_order(self):
        """Test that cache restore precedes install, and output precedes cache save."""
        script = render(NodeFrontend(framework=FrontendFramework.REACT))
        order = [
            script.index("==> Cloning"),
            script.index("==> Restoring cache (node_modules)"),
            script.index("==> Installing dependencies"),
            script.index("==> Building"),
            script.index("==> Copying output"),
            script.index("==> Saving cache (node_modules)"),
            script.index(SUCCESS_SENTINEL),
        ]
        assert order == sorted(order)

    def test_frontend_copies_output_directory(self):
        """Test that the frontend output directory is copied to the output dir."""
        script = render(NodeFrontend(framework=FrontendFramework.VUE))
        assert 'cp -a "$SOURCE_DIR"/dist/. "$OUTPUT_DIR"/' in script
        assert "output directory dist not found" in script

    def test_static_copies_source_without_git(self):
        """Test that static sites copy the source tree minus .git."""
        script = render(StaticSite())
        assert "--exclude=.git" in script
        assert "Installing dependencies" not in script

    def test_backend_writes_dockerfile(self):
        """Test that backend scripts write the Dockerfile into the output."""
        script = render(NodeBackend())
        assert 'cat > "$OUTPUT_DIR/Dockerfile"' in script
        assert "BUILDFORGE_EOF" in script

    def test_repository_is_shell_quoted(self):
        """Test that hostile repository strings cannot break out of quoting."""
        script = generate_script(
            StaticSite(), BuildConfig(), "https://example.com/a;rm -rf /", "main", COMMIT,
        )
        assert "'https://example.com/a;rm -rf /'" in script

    def test_secret_values_never_rendered(self):
        """Test that environment values stay out of the script text."""
        config = BuildConfig.model_validate({
            "environment": [{"key": "API_TOKEN", "value": "s3cr3t-value", "secret": True}],
        })
        script = render(NodeFrontend(framework=FrontendFramework.REACT), config)
        assert "s3cr3t-value" not in script

    def test_branch_is_never_expanded_by_the_shell(self):
        """Test that command substitution in a branch name stays literal."""
        script = generate_script(StaticSite(), BuildConfig(), REPO, "feat`id`", COMMIT)
        assert "echo '==> Cloning repository (branch feat`id`, commit 0123456789ab)'" in script
        assert "--branch 'feat`id`'" in script

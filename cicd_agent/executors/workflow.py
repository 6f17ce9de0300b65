"""WorkflowTemplateGenerator：生成带质量门禁的 Argo WorkflowTemplate。

纯函数式执行器，不访问外部系统；相同输入总是得到相同的 dict 与 YAML。
门禁包含两部分：
- 每种语言一个测试步骤，覆盖率低于阈值即失败；
- trivy 文件系统扫描，发现不低于 severity_fail_level 的漏洞即失败。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from cicd_agent.domain.exceptions import ValidationError
from cicd_agent.tools.definitions import ToolParam
from .base import ActionExecutor, ExecutionContext

SEVERITY_LEVELS = ["low", "medium", "high", "critical"]
SOURCE_PATH = "/src"
TRIVY_IMAGE = "aquasec/trivy:0.50.1"


@dataclass(frozen=True)
class LanguageProfile:
    image: str
    setup: str
    test: str
    # 打印出覆盖率百分比（数字）的命令
    coverage: str


LANGUAGES: Dict[str, LanguageProfile] = {
    "python": LanguageProfile(
        image="python:3.12-slim",
        setup="pip install -q -r requirements.txt pytest pytest-cov",
        test="pytest --cov=. --cov-report=term",
        coverage="coverage report --format=total",
    ),
    "javascript": LanguageProfile(
        image="node:20-alpine",
        setup="npm ci",
        test="npx jest --coverage --coverageReporters=json-summary",
        coverage="node -p \"require('./coverage/coverage-summary.json').total.lines.pct\"",
    ),
    "typescript": LanguageProfile(
        image="node:20-alpine",
        setup="npm ci",
        test="npx jest --coverage --coverageReporters=json-summary",
        coverage="node -p \"require('./coverage/coverage-summary.json').total.lines.pct\"",
    ),
    "go": LanguageProfile(
        image="golang:1.22",
        setup="go mod download",
        test="go test ./... -coverprofile=coverage.out",
        coverage="go tool cover -func=coverage.out | awk '/^total:/ {sub(\"%\", \"\", $3); print $3}'",
    ),
    "java": LanguageProfile(
        image="maven:3.9-eclipse-temurin-21",
        setup="mvn -q -B dependency:go-offline",
        test="mvn -q -B verify jacoco:report",
        coverage=(
            "awk -F, 'NR>1 {m+=$8; c+=$9} END {printf \"%.2f\", (c+m) ? 100*c/(c+m) : 0}' "
            "target/site/jacoco/jacoco.csv"
        ),
    ),
}

LANGUAGE_ALIASES = {"js": "javascript", "node": "javascript", "nodejs": "javascript", "ts": "typescript", "golang": "go", "py": "python"}


@dataclass
class TemplateArgs:
    languages: List[str]
    coverage_threshold: float
    severity_fail_level: str


def normalize_language(raw: str) -> str:
    key = raw.strip().lower()
    return LANGUAGE_ALIASES.get(key, key)


def severities_at_or_above(level: str) -> List[str]:
    return [s.upper() for s in SEVERITY_LEVELS[SEVERITY_LEVELS.index(level):]]


def _template_name(languages: List[str]) -> str:
    slug = re.sub(r"[^a-z0-9-]+", "-", "-".join(languages)).strip("-")
    return f"ci-quality-gate-{slug}"[:63].rstrip("-")


def _test_template(language: str, profile: LanguageProfile, threshold: float) -> Dict[str, Any]:
    script = "\n".join([
        "set -eu",
        f"cd {SOURCE_PATH}",
        profile.setup,
        profile.test,
        f"COVERAGE=$({profile.coverage})",
        'echo "coverage: ${COVERAGE}%"',
        f"awk -v c=\"$COVERAGE\" -v t={threshold:g} 'BEGIN {{ exit (c + 0 >= t) ? 0 : 1 }}' "
        f"|| {{ echo \"coverage below {threshold:g}%\"; exit 1; }}",
    ])
    return {
        "name": f"test-{language}",
        "inputs": {"artifacts": [_source_artifact()]},
        "container": {"image": profile.image, "command": ["sh", "-c"], "args": [script]},
    }


def _scan_template(level: str) -> Dict[str, Any]:
    return {
        "name": "security-scan",
        "inputs": {"artifacts": [_source_artifact()]},
        "container": {
            "image": TRIVY_IMAGE,
            "command": ["trivy"],
            "args": [
                "fs",
                "--exit-code",
                "1",
                "--severity",
                ",".join(severities_at_or_above(level)),
                "--no-progress",
                SOURCE_PATH,
            ],
        },
    }


def _source_artifact() -> Dict[str, Any]:
    return {
        "name": "source",
        "path": SOURCE_PATH,
        "git": {
            "repo": "{{workflow.parameters.repo}}",
            "revision": "{{workflow.parameters.revision}}",
        },
    }


def build_workflow_template(args: TemplateArgs) -> Dict[str, Any]:
    test_steps = [{"name": f"test-{lang}", "template": f"test-{lang}"} for lang in args.languages]
    entrypoint = {
        "name": "ci",
        "steps": [
            test_steps,
            [{"name": "security-scan", "template": "security-scan"}],
        ],
    }
    templates = [entrypoint]
    templates.extend(_test_template(lang, LANGUAGES[lang], args.coverage_threshold) for lang in args.languages)
    templates.append(_scan_template(args.severity_fail_level))
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "WorkflowTemplate",
        "metadata": {
            "name": _template_name(args.languages),
            "labels": {"app.kubernetes.io/managed-by": "cicd-agent"},
            "annotations": {
                "cicd-agent/coverage-threshold": f"{args.coverage_threshold:g}",
                "cicd-agent/severity-fail-level": args.severity_fail_level,
            },
        },
        "spec": {
            "entrypoint": "ci",
            "arguments": {
                "parameters": [
                    {"name": "repo"},
                    {"name": "revision", "value": "HEAD"},
                ]
            },
            "templates": templates,
        },
    }


class WorkflowTemplateGenerator(ActionExecutor[TemplateArgs]):
    name = "generate_ci_workflow_template"
    description = "生成带覆盖率与安全扫描门禁的 Argo WorkflowTemplate，返回 dict 与 YAML"
    params = {
        "languages": ToolParam(
            name="languages",
            description=f"项目使用的语言，支持 {', '.join(sorted(LANGUAGES))}",
            required=True,
            schema={"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
        ),
        "coverage_threshold": ToolParam(
            name="coverage_threshold",
            description="最低代码覆盖率百分比（0-100），默认 80",
            required=False,
            schema={"type": "number", "minimum": 0, "maximum": 100},
        ),
        "severity_fail_level": ToolParam(
            name="severity_fail_level",
            description="导致构建失败的最低漏洞级别，默认 high",
            required=False,
            schema={"type": "string", "enum": SEVERITY_LEVELS},
        ),
    }

    def _coerce(self, args: Dict[str, Any]) -> TemplateArgs:
        languages = list(dict.fromkeys(normalize_language(lang) for lang in args["languages"]))
        unknown = [lang for lang in languages if lang not in LANGUAGES]
        if unknown:
            raise ValidationError(
                code="INVALID_ARGUMENTS",
                message=f"{self.name}: unsupported languages {unknown}",
                tool=self.name,
                errors=[f"languages: unsupported {lang!r}" for lang in unknown],
                supported=sorted(LANGUAGES),
            )
        threshold = args.get("coverage_threshold")
        return TemplateArgs(
            languages=languages,
            coverage_threshold=float(80 if threshold is None else threshold),
            severity_fail_level=args.get("severity_fail_level") or "high",
        )

    def execute(self, validated: TemplateArgs, ctx: ExecutionContext) -> Dict[str, Any]:
        template = build_workflow_template(validated)
        return {
            "name": template["metadata"]["name"],
            "template": template,
            "yaml": yaml.safe_dump(template, sort_keys=False, allow_unicode=True),
        }

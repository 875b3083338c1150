from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from pipecheck.registry import CapabilityRegistry, load_registry

JENKINSFILE = """\
@Library('shared-utils@v2') _

pipeline {
    agent any
    environment {
        APP = 'shop'
        TOKEN = credentials('deploy-token')
    }
    stages {
        stage('Checkout') {
            steps { checkout scm }
        }
        stage('Build') {
            steps {
                retry(2) { sh 'make' }
            }
        }
        stage('Test') {
            matrix {
                axes {
                    axis { name 'OS'; values 'linux', 'windows' }
                }
                stages {
                    stage('Unit') { steps { sh 'make test' } }
                }
            }
        }
        stage('Deploy') {
            when { branch 'main' }
            steps {
                timeout(time: 1, unit: 'MINUTES') { deployApp 'shop' }
            }
        }
    }
    post {
        success { echo 'shipped' }
        failure { notifySlack '#builds' }
        always { echo 'cleanup' }
    }
}
"""

CAPABILITIES = """\
plugins = ["git"]
agent_features = ["shell"]
credentials = ["deploy-token"]
flags = ["matrix-supported"]

[libraries]
shared-utils = ["deployApp", "notifySlack"]
"""


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def jenkinsfile(project_root: Path) -> Path:
    path = project_root / "Jenkinsfile"
    path.write_text(JENKINSFILE)
    return path


@pytest.fixture()
def capabilities(project_root: Path) -> Path:
    path = project_root / "capabilities.toml"
    path.write_text(CAPABILITIES)
    return path


@pytest.fixture()
def registry(capabilities: Path) -> CapabilityRegistry:
    return load_registry(capabilities)


@pytest.fixture()
def write_scenario(project_root: Path) -> Callable[[str], Path]:
    def _write(content: str) -> Path:
        path = project_root / "scenario.toml"
        path.write_text(content)
        return path

    return _write

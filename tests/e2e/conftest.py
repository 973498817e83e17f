# tests/e2e/conftest.py
"""
Fixtures E2E: ferramentas falsas (mvn, trivy, docker, git) no PATH.

O pipeline de exemplo `pipelines/java-app.yaml` é executado de ponta a
ponta sem Maven, Docker ou rede: cada ferramenta é um script `/bin/sh`
que registra a chamada em `tools.log` e produz os arquivos que o stage
real produziria.

Decisões arquiteturais:
    - O PATH é alterado via monkeypatch antes da criação da run, pois o
      RunContext captura o ambiente herdado na criação
    - `FAKE_TRIVY_FINDINGS=1` faz o trivy falso sair com código 1
"""

import os
import stat
from pathlib import Path

import pytest


_TOOLS = {
    "mvn": """\
echo "mvn $*" >> "$TOOLS_LOG"
case " $* " in
  *" test "*) mkdir -p target/surefire-reports && echo '<testsuite tests="1"/>' > target/surefire-reports/TEST-app.xml ;;
esac
case " $* " in
  *" package "*) mkdir -p target && echo "fake jar" > target/java-app.jar ;;
esac
exit 0
""",
    "trivy": """\
echo "trivy $*" >> "$TOOLS_LOG"
out=trivy.txt
while [ $# -gt 0 ]; do
  if [ "$1" = "--output" ]; then out="$2"; fi
  shift
done
if [ "$FAKE_TRIVY_FINDINGS" = "1" ]; then
  echo "CVE-0000-0001 HIGH" > "$out"
  exit 1
fi
echo "no findings" > "$out"
exit 0
""",
    "docker": """\
echo "docker $*" >> "$TOOLS_LOG"
exit 0
""",
    "git": """\
echo "git $*" >> "$TOOLS_LOG"
exit 0
""",
}


@pytest.fixture
def fake_tools(tmp_path, monkeypatch) -> Path:
    """Instala as ferramentas falsas e devolve o caminho de `tools.log`."""
    bin_dir = tmp_path / "fake-bin"
    bin_dir.mkdir()
    for name, body in _TOOLS.items():
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    log = tmp_path / "tools.log"
    log.touch()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("TOOLS_LOG", str(log))
    monkeypatch.setenv("SONAR_HOST_URL", "http://sonar.local")
    monkeypatch.setenv("DOCKER_USERNAME", "ci")
    monkeypatch.setenv("DOCKER_PASSWORD", "secret")
    monkeypatch.delenv("FAKE_TRIVY_FINDINGS", raising=False)
    return log


@pytest.fixture
def deployment_repo(tmp_path) -> Path:
    """Repositório de deployment com um manifesto k8s apontando para a tag antiga."""
    repo = tmp_path / "deployment"
    (repo / "k8s").mkdir(parents=True)
    (repo / "k8s" / "deployment.yaml").write_text(
        "spec:\n  containers:\n    - name: app\n      image: registry.example.com/java-app:old\n",
        encoding="utf-8",
    )
    return repo

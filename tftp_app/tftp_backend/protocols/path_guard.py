#!/usr/bin/env python3
"""
Módulo de Contenção de Caminhos

Todo acesso do servidor ao sistema de arquivos passa por resolve_path(),
que confina o nome pedido pelo cliente ao diretório base.
"""

import os
from pathlib import Path
from typing import Union

from tftp_backend.protocols.tftp_errors import AccessViolation


def resolve_path(base_dir: Union[str, Path], requested_name: str) -> Path:
    """
    Resolve requested_name dentro de base_dir.

    Ambos os caminhos são canonicalizados (links simbólicos resolvidos) e o
    resultado precisa estar estritamente abaixo da base, por segmento de
    caminho e não por prefixo de string. Nomes absolutos, escapes com '..'
    e a própria base levantam AccessViolation. Nenhuma verificação de
    existência é feita aqui.
    """
    if not requested_name or "\0" in requested_name:
        raise AccessViolation(f"Nome de arquivo inválido: {requested_name!r}")
    if os.path.isabs(requested_name) or requested_name.startswith(("/", "\\")):
        raise AccessViolation(f"Caminho absoluto não permitido: {requested_name}")

    base = Path(base_dir).resolve()
    target = (base / requested_name).resolve()

    try:
        relative = target.relative_to(base)
    except ValueError:
        raise AccessViolation(f"Acesso fora do diretório base: {requested_name}") from None

    if relative == Path("."):
        raise AccessViolation(f"Acesso ao próprio diretório base: {requested_name}")

    return target

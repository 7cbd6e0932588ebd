"""
CLI entry point, when used as a module: `python -m clusterreg`.

Useful for debugging in the IDEs (use the start-mode "Module", module "clusterreg").
"""
from clusterreg import cli

if __name__ == '__main__':
    cli.main()

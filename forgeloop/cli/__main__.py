"""Entry point for `python -m forgeloop.cli` invocation.

The help text will correctly show 'forgeloop' as the command name.
"""


def main():
    """Run the CLI with proper program name."""
    from forgeloop.cli.app import app

    app(prog_name="forgeloop")


if __name__ == "__main__":
    main()

#!/usr/bin/env python

import sys


def main():
    """Main entry point - runs the batch registration CLI"""
    from batch_registrar.cli import main as cli_main
    cli_main(sys.argv[1:])


if __name__ == "__main__":
    main()

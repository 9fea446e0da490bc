#!/usr/bin/env python3
# Copyright 2019  Jonas Eriksson
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

# Assemble a flashable SD card image from the components in build/images.
# Usage: sudo ./scripts/assemble-image.py

import os
import sys

from amlsdimage import cli

def main():
    cli.setup_logging()
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    sys.exit(cli.assemble_image(root))

if __name__ == '__main__':
    main()

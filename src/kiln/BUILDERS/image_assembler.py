# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Final validation of a build into an addressable image.
"""

import logging
from typing import Sequence

from ..exceptions import IncompleteImageError
from ..MODELS.container_image import Image, ImageMetadata
from ..STORE.layer_store import LayerStore
from ..UTILS.identities import resolve_identity

logger = logging.getLogger(__name__)

PROTOCOLS = ("tcp", "udp", "sctp")


class ImageAssembler:
    """
    Composes layers and metadata into an Image, or refuses to.
    """

    def __init__(self, layer_store: LayerStore):
        self.layer_store = layer_store

    def finalize(self, layers: Sequence[str], metadata: ImageMetadata) -> Image:
        """
        Validate and assemble an image.

        The run-as user is resolved against the final filesystem and its
        numeric ids are recorded in the metadata.

        Raises:
            IncompleteImageError: Naming the first requirement that is not met.
        """
        if not layers or metadata.base_image is None:
            raise IncompleteImageError("no base layer; the recipe must start FROM an image")

        for exposed in metadata.exposed_ports:
            if not 1 <= exposed.port <= 65535:
                raise IncompleteImageError(f"exposed port {exposed.port} is outside 1-65535")
            if exposed.protocol not in PROTOCOLS:
                raise IncompleteImageError(f"exposed port {exposed} has unknown protocol")

        snapshot = self.layer_store.snapshot(layers[-1])
        try:
            uid, gid = resolve_identity(snapshot.entries, metadata.user, metadata.group)
        except KeyError as e:
            raise IncompleteImageError(f"USER does not resolve: {e.args[0]}")
        metadata = metadata.model_copy(update={"uid": uid, "gid": gid})

        image = Image.create(tuple(layers), metadata)
        logger.debug("Assembled image %s from %d layers", image.id, len(layers))
        return image

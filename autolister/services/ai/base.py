from abc import ABC, abstractmethod

from autolister.schemas.generation import GeneratedListing, GenerationRequest


class ListingGenerator(ABC):
    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GeneratedListing:
        """
        Generates listing fields for a single product.

        Raises TransientProviderError, FatalProviderError or ProviderError.
        """
        pass

    async def aclose(self) -> None:
        """Releases any network resources held by the generator."""
        return None

"""Entrada del camino bus: ProcessMessage(ctx, topic, payload).

TopicRouter → ValueExtractor → Dispatcher, una vez por (Thing, tipo).
Un payload que no se puede extraer se omite para ese Thing y el resto
de destinos continúa; los errores del directorio abortan el mensaje.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from ..context import IngestContext
from ..core.extraction.value_extractor import ValueExtractor
from ..dispatch.dispatcher import DispatchResult, Dispatcher
from ..errors import ExtractionError, IngestError
from ..metrics import MESSAGES_TOTAL
from ..routing.topic_router import MessageKind, Route, TopicRouter

logger = logging.getLogger(__name__)


class MessageService:
    def __init__(
        self,
        router: TopicRouter,
        dispatcher: Dispatcher,
        extractor: Optional[ValueExtractor] = None,
    ):
        self._router = router
        self._dispatcher = dispatcher
        self._extractor = extractor or ValueExtractor()

    def process_message(
        self,
        ctx: Optional[IngestContext],
        topic: str,
        payload: Union[str, bytes],
    ) -> List[DispatchResult]:
        """Procesa un mensaje del bus.

        Devuelve un DispatchResult por cada Thing al que se aplicó un valor.

        Raises:
            StorageError / NotFound: fallo del directorio o escritura primaria
        """
        ctx = ctx or IngestContext.background()

        results: List[DispatchResult] = []
        try:
            routes = self._router.route(topic)
            if not routes:
                MESSAGES_TOTAL.labels(result="unmatched").inc()
                return []

            for route in routes:
                result = self._apply_route(route, topic, payload, ctx)
                if result is not None:
                    results.append(result)
        except IngestError:
            MESSAGES_TOTAL.labels(result="failed").inc()
            raise

        MESSAGES_TOTAL.labels(result="routed").inc()
        return results

    def _apply_route(
        self,
        route: Route,
        topic: str,
        payload: Union[str, bytes],
        ctx: IngestContext,
    ) -> Optional[DispatchResult]:
        template = ""
        if route.kind is MessageKind.MEASUREMENT:
            template = route.thing.sensor.measurement_value

        try:
            value = self._extractor.extract(payload, template)
            return self._dispatcher.apply(route.thing, route.kind, value, ctx)
        except ExtractionError as e:
            logger.warning(
                "[MQTT] Extraction failed topic=%s thing=%s kind=%s err=%s",
                topic, route.thing.name, route.kind.value, e,
            )
            return None
